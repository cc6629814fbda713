"""Test package for tvwatch unit and integration tests."""

import logging

logging.getLogger("asyncio").setLevel(logging.ERROR)
