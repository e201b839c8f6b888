# Deploy: set secrets and run 'uvicorn server:app --host=0.0.0.0 --port=8000'
import logging
import os

from dotenv import load_dotenv

from status_pulse.api import create_app
from status_pulse.config import load_settings

load_dotenv()

logging.basicConfig(level=logging.INFO, handlers=[logging.StreamHandler()])
logger = logging.getLogger("status_pulse")

settings = load_settings(os.getenv("STATUS_PULSE_ENV"))
if not settings.api_key:
    logger.warning("API_KEY is not set. API endpoints will reject requests until provided.")
if not settings.facts_api_url:
    logger.warning("FACTS_API_URL is not set. Attendance and calendar facts will be simulated.")

app = create_app(settings)

__all__ = ["app"]
