"""Realtime CRUD API with PostgreSQL change-data-capture fan-out over WebSockets."""


def main() -> None:
    """Entrypoint proxy that defers importing the service until needed."""

    from .service import main as _service_main

    _service_main()


__all__ = ["main"]
