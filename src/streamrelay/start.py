from collections.abc import AsyncIterator

from aiohttp.web_app import Application

from streamrelay import settings
from streamrelay.api.routes import routes
from streamrelay.node import NODE_KEY, RelayNode
from streamrelay.web import start_web_server


async def monitoring_context(app: Application) -> AsyncIterator[None]:
    if settings.monitoring.prom_text_file:
        from .monitoring import Monitoring
        monitoring = Monitoring(app[NODE_KEY].stats)
        await monitoring.run()
        yield
        await monitoring.stop()
    else:
        yield


def start() -> None:
    node = RelayNode()
    start_web_server(
        routes,
        settings.listen_address,
        settings.listen_port,
        cleanup_contexts=(
            node.app_context,
            monitoring_context,
        ),
        app_state={NODE_KEY: node},
        verbose=settings.dev_mode,
    )
