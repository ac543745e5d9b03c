import uvicorn

from prompt_relay.config import load_settings


def main() -> None:
    settings = load_settings()
    uvicorn.run(
        "prompt_relay.main:app",
        host=settings.host,
        port=settings.port,
        reload=False,
    )


if __name__ == "__main__":
    main()
