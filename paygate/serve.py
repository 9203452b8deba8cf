#!/usr/bin/env python3
"""
API server entry point.

Usage:
    python -m paygate.serve
"""
import os
import sys

import uvicorn


def main() -> None:
    host = os.getenv("PAYGATE_HOST", "0.0.0.0")
    port = int(os.getenv("PAYGATE_PORT", "8000"))
    print(f"[paygate] Server: http://{host}:{port}")
    print("[paygate] Press CTRL+C to stop")
    try:
        uvicorn.run(
            "paygate.main:app",
            host=host,
            port=port,
            reload=False,
            log_level="info",
            access_log=False,
        )
    except KeyboardInterrupt:
        print("\n[paygate] Shutting down...")
        sys.exit(0)


if __name__ == "__main__":
    main()
