#!/usr/bin/env python3
"""
Server startup wrapper for the PromptPro core API.

    python -m promptpro.start_server

HOST / PORT env vars override the defaults.
"""
import os
import sys


def main() -> int:
    import uvicorn

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    print(f"[PromptPro] Starting on http://{host}:{port}")
    try:
        uvicorn.run(
            "promptpro.main:app",
            host=host,
            port=port,
            reload=False,
            log_level="info",
            access_log=True,
        )
    except KeyboardInterrupt:
        print("\n[PromptPro] Shutting down...")
    return 0


if __name__ == "__main__":
    sys.exit(main())
