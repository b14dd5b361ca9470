# asgi entrypoint
import uvicorn

from taskpilot.application.api.api_server import create_app
from taskpilot.config.app_config import get_service_settings


def run():
    settings = get_service_settings()
    uvicorn.run(create_app(settings), host="0.0.0.0", port=8000, log_config=None)


if __name__ == "__main__":
    run()
