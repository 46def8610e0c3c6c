"""
Plugin manifest schema — validates manifests submitted through the admin API.
"""

import re
from typing import Optional

from pydantic import BaseModel, Field, field_validator

SLUG_PATTERN = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")

ARTIFACT_KINDS = ("admin_page", "widget", "controller", "hook", "event", "cron", "lifecycle")

HTTP_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE")


class AdminNavigation(BaseModel):
    enabled: bool = False
    label: str = ""
    icon: str = "Package"
    route: str = ""
    order: int = 100


class PluginManifest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    slug: str
    version: str = "1.0.0"
    category: str = "utility"
    description: str = ""
    author: str = ""
    adminNavigation: Optional[AdminNavigation] = None
    configSchema: dict = {}
    permissions: list[str] = []     # e.g. ["database.write", "api.access"]

    @field_validator("slug")
    @classmethod
    def _check_slug(cls, v: str) -> str:
        if not SLUG_PATTERN.match(v) or len(v) > 100:
            raise ValueError("slug must be lowercase words joined by '-'")
        return v


def slugify(name: str) -> str:
    """Derive a URL-safe slug from a display name."""
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug or "plugin"
