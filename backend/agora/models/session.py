from sqlalchemy import JSON, Column, DateTime, MetaData, String, Table, func
from sqlalchemy.dialects.postgresql import JSONB

SESSION_ID_LENGTH = 64


def session_table(metadata: MetaData, name: str) -> Table:
    """Return the session table called ``name``, defining it on first use.

    The table name comes from configuration, so it is built at runtime
    instead of being a declarative model.
    """
    return Table(
        name,
        metadata,
        Column("id", String(SESSION_ID_LENGTH), primary_key=True),
        Column("data", JSON().with_variant(JSONB(), "postgresql"), nullable=False),
        Column("expires_at", DateTime(timezone=True), nullable=False, index=True),
        Column("created_at", DateTime(timezone=True), server_default=func.now()),
        Column("updated_at", DateTime(timezone=True), server_default=func.now()),
        keep_existing=True,
    )
