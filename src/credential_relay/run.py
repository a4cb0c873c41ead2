"""
Module runner to start the control API and the executor connection.

Usage:
    python -m credential_relay.run
"""
from dotenv import load_dotenv
import uvicorn

from .api.main import create_app
from .core.settings import get_settings


# PUBLIC_INTERFACE
def main():
    """Entry point to start the relay with environment-based configuration."""
    load_dotenv()
    settings = get_settings()
    app = create_app()

    print(f"[server] Starting Credential Relay on {settings.api.HOST}:{settings.api.PORT} (log_level={settings.api.LOG_LEVEL})")
    uvicorn.run(
        app,
        host=settings.api.HOST,
        port=settings.api.PORT,
        log_level=settings.api.LOG_LEVEL,
    )


if __name__ == "__main__":
    main()
