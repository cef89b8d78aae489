"""Declarative base for ORM models."""

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for tenant-scoped tables.

    Tables are declared without a schema; sessions resolve them inside the
    tenant schema through ``schema_translate_map``.
    """
