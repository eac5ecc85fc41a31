from __future__ import annotations

import logging
from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool

import wavmedia.models  # noqa: F401 (registers every table on Base.metadata)
from wavmedia.core.config import settings
from wavmedia.models import Base

config = context.config
if config.config_file_name is not None:
    try:
        fileConfig(config.config_file_name, disable_existing_loggers=False)
    except KeyError:
        logging.basicConfig(level=logging.INFO)

logger = logging.getLogger("alembic.env.wavmedia")


def _database_url() -> str:
    # `alembic -x db_url=...` wins over DATABASE_URL_SYNC
    return context.get_x_argument(as_dictionary=True).get("db_url") or settings.DATABASE_URL_SYNC


def _configure(**kwargs) -> None:
    url = kwargs.pop("url", None)
    is_sqlite = (url or str(kwargs["connection"].engine.url)).startswith("sqlite")
    context.configure(
        target_metadata=Base.metadata,
        compare_type=True,
        render_as_batch=is_sqlite,
        url=url,
        **kwargs,
    )


if context.is_offline_mode():
    url = _database_url()
    logger.info("Emitting SQL for %s", url.split("@")[-1])
    _configure(url=url, literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()
else:
    engine = create_engine(_database_url(), poolclass=pool.NullPool)
    try:
        with engine.connect() as connection:
            _configure(connection=connection)
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()
