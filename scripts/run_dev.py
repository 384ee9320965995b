from __future__ import annotations

import argparse

import uvicorn

from huayu.backend.config import AppConfig


def main() -> None:
    cfg = AppConfig.from_env()
    parser = argparse.ArgumentParser(description="Run the Huayu Buddy API with autoreload.")
    parser.add_argument("--host", default=cfg.host)
    parser.add_argument("--port", type=int, default=cfg.port)
    args = parser.parse_args()
    uvicorn.run("huayu.backend.main:app", host=args.host, port=args.port, reload=True)


if __name__ == "__main__":
    main()
