# FILE: rentbill/utils/timezone.py
from __future__ import annotations

from datetime import date, datetime
from functools import lru_cache
from zoneinfo import ZoneInfo

from rentbill.core.config import settings


@lru_cache(maxsize=None)
def _zone(name: str) -> ZoneInfo:
    return ZoneInfo(name)


def local_now() -> datetime:
    """
    *Naive* datetime in the business timezone (settings.TIMEZONE).
    DateTime columns are naive, so we strip tzinfo.
    """
    return datetime.now(_zone(settings.TIMEZONE)).replace(tzinfo=None)


def local_today() -> date:
    return local_now().date()
