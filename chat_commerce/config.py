"""
Runtime configuration.

Values are read from the environment (and a local .env file) once at import
time. Every component also accepts explicit overrides in its constructor.
"""

import logging
import os
from typing import Optional

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Language model
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
CHAT_MODEL = os.getenv("CHAT_MODEL", "gpt-4o")
MODEL_TIMEOUT_SECONDS = float(os.getenv("MODEL_TIMEOUT_SECONDS", "60"))

# Tools and persistence
DATABASE_PATH = os.getenv("DATABASE_PATH", "./db/commerce.db")
PRODUCTS_PATH = os.getenv("PRODUCTS_PATH", "./data/products.json")
TOOL_TIMEOUT_SECONDS = float(os.getenv("TOOL_TIMEOUT_SECONDS", "30"))
ORDER_MAX_ATTEMPTS = int(os.getenv("ORDER_MAX_ATTEMPTS", "3"))

# WhatsApp Cloud API
WHATSAPP_TOKEN = os.getenv("WHATSAPP_TOKEN")
WHATSAPP_PHONE_NUMBER_ID = os.getenv("WHATSAPP_PHONE_NUMBER_ID")
WHATSAPP_API_URL = os.getenv("WHATSAPP_API_URL", "https://graph.facebook.com/v22.0")
MESSAGING_TIMEOUT_SECONDS = float(os.getenv("MESSAGING_TIMEOUT_SECONDS", "15"))

# Sent before the agent starts working on a message; empty disables it
PROCESSING_NOTICE = os.getenv("PROCESSING_NOTICE", "")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


def configure_logging(level: Optional[str] = None) -> None:
    """Set up root logging for the command-line entry points."""
    logging.basicConfig(
        level=(level or LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
