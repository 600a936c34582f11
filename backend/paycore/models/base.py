"""Declarative base and shared column types"""
from datetime import datetime, timezone

from sqlalchemy import Numeric
from sqlalchemy.orm import declarative_base

Base = declarative_base()

# Two decimal places: the smallest currency unit
Money = Numeric(12, 2, asdecimal=True)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
