"""
MxL Client Settings
Configuration for the on-device SDK.
"""

from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ClientSettings(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    api_key: str = Field(alias="apiKey", min_length=1)
    endpoint: str
    batch_size: int = Field(default=50, ge=1, alias="batchSize")
    flush_interval_seconds: float = Field(default=30.0, gt=0, alias="flushIntervalSeconds")
    max_offline_storage_bytes: int = Field(default=10 * 1024 * 1024, gt=0, alias="maxOfflineStorageBytes")
    retention_days: int = Field(default=7, ge=1, alias="retentionDays")
    enable_pii_redaction: bool = Field(default=True, alias="enablePiiRedaction")
    upload_timeout_seconds: float = Field(default=10.0, gt=0, alias="uploadTimeoutSeconds")
    max_backoff_seconds: float = Field(default=30 * 60.0, gt=0, alias="maxBackoffSeconds")
    database_path: str = Field(default="mxl_telemetry.db", alias="databasePath")
    device_info: Optional[Dict[str, str]] = Field(default=None, alias="deviceInfo")

    @field_validator("endpoint")
    @classmethod
    def _https_only(cls, v: str) -> str:
        v = v.strip().rstrip("/")
        if not v.startswith("https://"):
            raise ValueError("endpoint must use https")
        return v

    @property
    def batch_url(self) -> str:
        return f"{self.endpoint}/telemetry/batch"
