"""SQLAlchemy table definitions - dialect-agnostic (works with SQLite and PostgreSQL)."""

from sqlalchemy import Column, DateTime, Integer, MetaData, Table, Text

metadata = MetaData()

# Holds exactly one row, keyed by SINGLETON_ID.
latest_record_table = Table(
    "latest_record",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=False),
    Column("timestamp", DateTime(timezone=True), nullable=False),
    Column("info", Text, nullable=False),
)
