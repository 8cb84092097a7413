import re

from django.conf import settings


def tuition_head_pattern():
    return re.compile(getattr(settings, 'FEE_TUITION_HEAD_PATTERN', 'tuition'), re.IGNORECASE)


def transport_head_keywords() -> tuple:
    keywords = getattr(settings, 'FEE_TRANSPORT_HEAD_KEYWORDS', ('transport', 'van'))
    if isinstance(keywords, str):
        keywords = keywords.split(',')
    return tuple(keyword.strip().lower() for keyword in keywords if keyword and keyword.strip())


def opening_balance_head_id():
    return getattr(settings, 'FEE_OPENING_BALANCE_HEAD_ID', 'opening-balance')


def opening_balance_head_name() -> str:
    return getattr(settings, 'FEE_OPENING_BALANCE_HEAD_NAME', 'Previous Balance')
