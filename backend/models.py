"""
Pydantic request/response models shared across route modules.
"""

from typing import Any, Optional
from pydantic import BaseModel


class ArtifactSave(BaseModel):
    kind: str
    key: str
    source: str
    method: Optional[str] = ""
    name: Optional[str] = ""
    category: Optional[str] = ""
    route: Optional[str] = ""
    enabled: bool = True


class ArtifactToggle(BaseModel):
    enabled: bool


class InstallRequest(BaseModel):
    config: Optional[dict] = None


class ConfigUpdate(BaseModel):
    config: dict


class HookApplyRequest(BaseModel):
    input: Any = None
    context: Optional[dict] = None


class EventEmitRequest(BaseModel):
    payload: Any = None


class RenderRequest(BaseModel):
    props: Optional[dict] = None


class CronJobCreate(BaseModel):
    name: str
    cron_expression: str
    handler: Optional[str] = None     # cron artifact key, defaults to the job name
    description: Optional[str] = ""
    params: Optional[dict] = None
    timeout_seconds: Optional[int] = None
    max_failures: Optional[int] = None


class CronJobUpdate(BaseModel):
    cron_expression: Optional[str] = None
    description: Optional[str] = None
    params: Optional[dict] = None
    is_enabled: Optional[bool] = None
    timeout_seconds: Optional[int] = None
    max_failures: Optional[int] = None


class MigrationCreate(BaseModel):
    name: str
    version: str
    sql: str


class MigrationReset(BaseModel):
    sql: Optional[str] = None


class SqlAnalyzeRequest(BaseModel):
    sql: str


class PluginStatusUpdate(BaseModel):
    status: str
