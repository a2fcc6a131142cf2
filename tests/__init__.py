"""Test package for chatrelay unit and integration tests."""

import logging

logging.getLogger("asyncio").setLevel(logging.ERROR)
logging.getLogger("chatrelay").setLevel(logging.CRITICAL)
