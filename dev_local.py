#!/usr/bin/env python3
"""
Run the booking engine locally against a sandbox gateway.
Uses the configuration from .env.local
"""
import asyncio
import sys
from pathlib import Path

from loguru import logger

env_local = Path(__file__).parent / ".env.local"
if not env_local.exists():
    logger.error("❌ .env.local not found, create it from config.env.example")
    logger.warning("⚠️ Use a SANDBOX Konnect wallet and API key")
    sys.exit(1)

content = env_local.read_text(encoding="utf-8")
if "your_sandbox_api_key_here" in content:
    logger.error("❌ Replace KONNECT_API_KEY in .env.local with your sandbox key")
    sys.exit(1)
if "api.konnect.network" in content:
    logger.error("❌ .env.local points at the production gateway, use api.sandbox.konnect.network")
    sys.exit(1)

logger.info("✅ Starting local booking engine with .env.local")

from main import main  # noqa: E402

if __name__ == "__main__":
    asyncio.run(main())
