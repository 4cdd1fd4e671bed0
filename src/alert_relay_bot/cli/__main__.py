from __future__ import annotations

import argparse
import asyncio
import logging

from dotenv import load_dotenv

from ..app import RelayApp
from ..config import load_config
from ..logging_setup import setup_logging

log = logging.getLogger("cli")


async def main_async(cfg_path: str) -> None:
    load_dotenv()
    cfg = load_config(cfg_path)

    setup_logging(cfg.get("logging", {}).get("level", "INFO"))

    app = RelayApp(cfg)
    await app.start()

    # Run forever
    try:
        while True:
            await asyncio.sleep(3600)
    except KeyboardInterrupt:
        log.info("Stopping...")
    finally:
        await app.stop()


def main() -> None:
    ap = argparse.ArgumentParser()
    ap.add_argument("--config", default="configs/default.yaml", help="Path to YAML config (e.g. configs/default.yaml)")
    args = ap.parse_args()
    asyncio.run(main_async(args.config))


if __name__ == "__main__":
    main()
