from __future__ import annotations

import os

import uvicorn


def main() -> None:
    host = os.getenv("FAMILYHUB_HOST", "0.0.0.0")
    port = int(os.getenv("FAMILYHUB_PORT", "8080"))
    uvicorn.run("familyhub.web_admin:app", host=host, port=port, reload=False, log_config=None)


if __name__ == "__main__":
    main()
