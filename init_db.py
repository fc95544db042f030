import asyncio
import os

from ticketdesk.config import Settings
from ticketdesk.infra.sql import create_schema, engine_from_settings


async def init_db(settings: Settings) -> None:
    engine, _, _, _ = engine_from_settings(settings)
    try:
        await create_schema(engine)
    finally:
        await engine.dispose()
    print(f'✅ tables created in {engine.url.render_as_string(hide_password=True)}')


if __name__ == '__main__':
    settings = Settings.from_env()
    if settings.buffer_backend == "files":
        os.makedirs(os.path.join(settings.buffer_dir, "failed"), exist_ok=True)
    asyncio.run(init_db(settings))
