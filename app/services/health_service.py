from datetime import UTC, datetime

from app.core.config import Settings
from app.schemas.health import HealthResponse


class HealthService:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def get_status(self) -> HealthResponse:
        return HealthResponse(
            status="ok",
            service=self.settings.app_name,
            version=self.settings.app_version,
            data_store=self.settings.sync_data_store,
            fathom_configured=bool(self.settings.fathom_api_url.strip()),
            timestamp=datetime.now(UTC),
        )
