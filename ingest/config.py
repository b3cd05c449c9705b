# ingest/config.py
import os
from functools import lru_cache
from typing import Dict, Optional

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field, ValidationError

# Host markers that may escalate to the dataset service.
RESTRICTED_HOST_MARKERS = ("amazon.", "walmart.")


class Settings(BaseModel):
    mongo_uri: str = Field(default="mongodb://localhost:27017", alias="MONGO_URI")
    mongo_db: str = Field(default="product_previews", alias="MONGO_DB")
    api_port: int = Field(default=8000, alias="API_PORT")
    env: str = Field(default="local", alias="APP_ENV")

    diffbot_token: Optional[str] = Field(default=None, alias="DIFFBOT_TOKEN")
    diffbot_api_url: str = Field(
        default="https://api.diffbot.com/v3/analyze", alias="DIFFBOT_API_URL"
    )

    brightdata_api_key: Optional[str] = Field(default=None, alias="BRIGHTDATA_API_KEY")
    brightdata_api_url: str = Field(
        default="https://api.brightdata.com/datasets/v3", alias="BRIGHTDATA_API_URL"
    )
    brightdata_amazon_dataset_id: Optional[str] = Field(
        default=None, alias="BRIGHTDATA_AMAZON_DATASET_ID"
    )
    brightdata_walmart_dataset_id: Optional[str] = Field(
        default=None, alias="BRIGHTDATA_WALMART_DATASET_ID"
    )

    rate_limit_per_hour: int = Field(default=30, alias="RATE_LIMIT_PER_HOUR")
    cache_ttl_days: int = Field(default=30, alias="CACHE_TTL_DAYS")
    html_fetch_timeout: float = Field(default=12.0, alias="HTML_FETCH_TIMEOUT")
    structured_service_timeout: float = Field(
        default=20.0, alias="STRUCTURED_SERVICE_TIMEOUT"
    )
    dataset_poll_interval: float = Field(default=3.0, alias="DATASET_POLL_INTERVAL")
    dataset_poll_ceiling: float = Field(default=45.0, alias="DATASET_POLL_CEILING")
    dataset_call_timeout: float = Field(default=15.0, alias="DATASET_CALL_TIMEOUT")
    request_timeout: float = Field(default=120.0, alias="REQUEST_TIMEOUT")

    model_config = {"populate_by_name": True}

    @property
    def stage_budget(self) -> float:
        """Worst-case seconds spent across all three stages for one request."""
        return (
            self.html_fetch_timeout
            + self.structured_service_timeout
            + self.dataset_call_timeout  # trigger
            + self.dataset_poll_ceiling
            + self.dataset_call_timeout  # download
        )

    @property
    def dataset_ids(self) -> Dict[str, Optional[str]]:
        return {
            "amazon.": self.brightdata_amazon_dataset_id or None,
            "walmart.": self.brightdata_walmart_dataset_id or None,
        }

    def dataset_id_for(self, hostname: str) -> Optional[str]:
        """Return the dataset configured for a restricted host, if any."""
        for marker, dataset_id in self.dataset_ids.items():
            if marker in hostname:
                return dataset_id
        return None


def is_restricted_host(hostname: str) -> bool:
    return any(marker in hostname for marker in RESTRICTED_HOST_MARKERS)


@lru_cache()
def get_settings() -> Settings:
    load_dotenv(find_dotenv(usecwd=True))
    try:
        return Settings(**os.environ)
    except ValidationError as exc:
        invalid = [str(e["loc"][0]) for e in exc.errors()]
        detail = f"Invalid environment variables: {', '.join(invalid)}"
        raise RuntimeError(detail) from exc
