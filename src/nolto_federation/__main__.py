from __future__ import annotations

import logging

import uvicorn

from .app import _load_settings, create_app


def main() -> None:  # pragma: no cover - entry point
    settings = _load_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = create_app(settings)
    uvicorn.run(app, host="0.0.0.0", port=8080)


if __name__ == "__main__":  # pragma: no cover
    main()
