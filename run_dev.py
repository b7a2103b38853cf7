#!/usr/bin/env python
"""
Development runner for the payout engine.
Serves the HTTP API without the Telegram bot.
"""
import asyncio
import os
import logging

# The bot needs a real token; keep it off locally unless asked for
os.environ.setdefault("BOT_ENABLED", "False")

from payout_engine.main import main

if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    try:
        asyncio.run(main())
    except (KeyboardInterrupt, SystemExit):
        logging.info("Payout engine stopped!")
