"""
FulfillOps Database Session Management

Async SQLAlchemy engine and session factory.

Tenant context for row-level security lives in session.info and is applied
transaction-local at the start of every transaction the session opens.
"""

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase, Session
from core.config import get_settings

settings = get_settings()

TENANT_CONTEXT_KEY = "tenant_id"

engine = create_async_engine(
    settings.database_url,
    echo=settings.database_echo,
    pool_pre_ping=True,
)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """Declarative base for all SQLAlchemy models."""
    pass


def _emit_tenant_setting(connection, tenant_id: str) -> None:
    if connection.dialect.name != "postgresql":
        return
    connection.execute(
        text("SELECT set_config('app.current_tenant_id', :tid, true)"),
        {"tid": tenant_id},
    )


@event.listens_for(Session, "after_begin")
def _apply_tenant_context(session, transaction, connection):
    tenant_id = session.info.get(TENANT_CONTEXT_KEY)
    if tenant_id is not None:
        _emit_tenant_setting(connection, tenant_id)


async def set_tenant_context(db: AsyncSession, tenant_id) -> None:
    """Bind the session to a tenant for the rest of its life."""
    db.info[TENANT_CONTEXT_KEY] = str(tenant_id)
    if db.in_transaction():
        connection = await db.connection()
        await connection.run_sync(_emit_tenant_setting, str(tenant_id))
