"""Persistence layer - database adapters and operations."""

from cloudforge.persistence.adapter import PersistenceAdapter, project
from cloudforge.persistence.config import DatabaseConfig, create_adapter, sqlalchemy_url

__all__ = ["PersistenceAdapter", "project", "DatabaseConfig", "create_adapter", "sqlalchemy_url"]
