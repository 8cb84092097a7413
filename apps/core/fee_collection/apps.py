from django.apps import AppConfig


class FeeCollectionConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'apps.core.fee_collection'
    label = 'core_fee_collection'
    verbose_name = 'Fee collection'
