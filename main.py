"""ASGI compatibility entrypoint for platforms that resolve `main:app`."""

from rizzmate.main import app

__all__ = ["app", "main"]


def main() -> None:
    import uvicorn

    uvicorn.run("rizzmate.main:app", host="0.0.0.0", port=8001)


if __name__ == "__main__":
    main()
