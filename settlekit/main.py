import os

import uvicorn

from settlekit.api.app import create_app
from settlekit.config import load_settings
from settlekit.logging_config import configure_logging


def main() -> None:
    settings = load_settings()
    configure_logging(settings.log_level, json_output=settings.log_json)
    app = create_app(settings)

    host = os.environ.get("HOST", "0.0.0.0").strip() or "0.0.0.0"
    port_raw = os.environ.get("PORT", "9000").strip() or "9000"
    try:
        port = int(port_raw)
    except ValueError as exc:
        raise ValueError(f"PORT must be int, got: {port_raw!r}") from exc

    uvicorn.run(app, host=host, port=port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
