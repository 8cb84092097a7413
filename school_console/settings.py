"""
Django settings for school_console project.

Scope:
- fee collection engine (per-head dues, lump-sum allocation, bulk transaction payload)
- no persistence of its own; drafts live only while a collection form is open
"""
import os
from pathlib import Path


BASE_DIR = Path(__file__).resolve().parent.parent


def _env_flag(name, default='False'):
    return os.getenv(name, default).lower() in {'1', 'true', 'yes'}


def _env_list(name, default):
    return tuple(
        item.strip()
        for item in os.getenv(name, default).split(',')
        if item.strip()
    )


DEBUG = _env_flag('DJANGO_DEBUG')
SECRET_KEY = os.getenv(
    'DJANGO_SECRET_KEY',
    'change-this-secret-key-in-production-9b1d3c7e5a2f4860a1c2d3e4f5a6b7c8',
)
ALLOWED_HOSTS = list(_env_list('DJANGO_ALLOWED_HOSTS', 'localhost,127.0.0.1'))


INSTALLED_APPS = [
    'django.contrib.contenttypes',
    'django.contrib.auth',
    'apps.core.fee_collection.apps.FeeCollectionConfig',
]


MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.middleware.common.CommonMiddleware',
]


ROOT_URLCONF = 'school_console.urls'

WSGI_APPLICATION = 'school_console.wsgi.application'


DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': BASE_DIR / 'db.sqlite3',
    }
}


LANGUAGE_CODE = 'en-us'
TIME_ZONE = os.getenv('DJANGO_TIME_ZONE', 'Asia/Kolkata')
USE_I18N = True
USE_TZ = True

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'


SECURE_PROXY_SSL_HEADER = ('HTTP_X_FORWARDED_PROTO', 'https')


LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'console': {
            'format': '%(asctime)s %(levelname)s %(name)s: %(message)s',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'console',
        },
    },
    'loggers': {
        'apps.core.fee_collection': {
            'handlers': ['console'],
            'level': os.getenv('FEE_COLLECTION_LOG_LEVEL', 'INFO'),
            'propagate': False,
        },
    },
}


# Heads whose name matches this pattern (case-insensitive) are allocated first.
FEE_TUITION_HEAD_PATTERN = os.getenv('FEE_TUITION_HEAD_PATTERN', 'tuition')
FEE_TRANSPORT_HEAD_KEYWORDS = _env_list('FEE_TRANSPORT_HEAD_KEYWORDS', 'transport,van')
FEE_OPENING_BALANCE_HEAD_ID = os.getenv('FEE_OPENING_BALANCE_HEAD_ID', 'opening-balance')
FEE_OPENING_BALANCE_HEAD_NAME = os.getenv('FEE_OPENING_BALANCE_HEAD_NAME', 'Previous Balance')
