"""Run the relay with uvicorn: ``python -m chat_relay`` or ``chat-relay``."""
import uvicorn

from chat_relay.config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        "chat_relay.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
