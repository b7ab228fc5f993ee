from __future__ import annotations

import uvicorn

from ollama_proxy.core.settings import get_settings


def main() -> None:
    settings = get_settings()

    # Import after settings are resolved so .env overrides apply to the app
    from apps.api.main import app  # noqa: WPS433

    # The Electron shell talks to a fixed port; no autoreload
    uvicorn.run(app, host=settings.app_host, port=settings.app_port, reload=False)


if __name__ == "__main__":
    main()
