#!/usr/bin/env python3
"""
Start script - runs the control surface with uvicorn.

The listen port comes from PORT or APP_PORT. When the `http_api` endpoint is
configured with scheme "https", the TLS material in TLS_DIR is checked (and
generated if missing) and handed to uvicorn.
"""
import os

if __name__ == "__main__":
    import uvicorn

    from core.certs import CERT_FILE, KEY_FILE, check_certs
    from core.config import settings

    port = int(os.getenv("PORT", settings.app_port))
    ssl_options = {}

    endpoint = settings.remote_control.get("http_api")
    if endpoint is not None and endpoint.scheme == "https":
        check_certs(settings.tls_dir)
        ssl_options = {
            "ssl_certfile": str(settings.tls_dir / CERT_FILE),
            "ssl_keyfile": str(settings.tls_dir / KEY_FILE),
        }

    uvicorn.run(
        "app.main:app",
        host=settings.app_host,
        port=port,
        log_level=settings.log_level.lower(),
        **ssl_options
    )
