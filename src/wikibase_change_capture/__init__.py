"""Incremental change capture from a Wikibase recent changes feed."""

from .uris import WikibaseUris, normalize_uri


def main() -> None:
    """Entrypoint proxy that defers importing the service until needed."""

    from .service import main as _service_main

    _service_main()


__all__ = ["main", "normalize_uri", "WikibaseUris"]
