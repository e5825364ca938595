import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool, create_engine

from settlement.core.config import settings
from settlement.db.session import Base

# Import all models so Alembic sees them in metadata
from settlement.models.user import User  # noqa: F401
from settlement.models.tour import Tour  # noqa: F401
from settlement.models.time_slot import TimeSlot  # noqa: F401
from settlement.models.booking import Booking  # noqa: F401
from settlement.models.payment import Payment  # noqa: F401
from settlement.models.payout import Payout  # noqa: F401
from settlement.models.payout_item import PayoutItem  # noqa: F401
from settlement.models.audit_log import AuditLog  # noqa: F401
from settlement.models.email_log import EmailLog  # noqa: F401


config = context.config

# Force sqlalchemy.url from the runtime DATABASE_URL
db_url = getattr(settings, "DATABASE_URL", None) or os.getenv("DATABASE_URL")
if not db_url:
    raise RuntimeError("DATABASE_URL is not set (check .env / settlement.core.config.settings)")

config.set_main_option("sqlalchemy.url", db_url)

if config.config_file_name is not None:
    fileConfig(config.config_file_name, disable_existing_loggers=False)

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    # engine_from_config would not expand env vars in alembic.ini, so build the engine from the forced url
    connectable = create_engine(config.get_main_option("sqlalchemy.url"), poolclass=pool.NullPool)

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
