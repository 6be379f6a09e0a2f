# lockdown_scanner/schemas.py
"""
Wire schemas for the two external services the engine talks to.

Payloads are validated here, at the boundary, so the rest of the engine never
pokes at optional dictionary keys. Anything that does not conform is skipped
by the caller.
"""
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


# --- OSV.dev ---

class OsvModel(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class OsvPackage(OsvModel):
    name: str
    ecosystem: str


class OsvQuery(OsvModel):
    package: OsvPackage
    version: str


class OsvBatchRequest(OsvModel):
    queries: list[OsvQuery]


class OsvSeverity(OsvModel):
    type: str
    score: str


class OsvReference(OsvModel):
    type: Optional[str] = None
    url: Optional[str] = None


class OsvEvent(OsvModel):
    introduced: Optional[str] = None
    fixed: Optional[str] = None
    last_affected: Optional[str] = None
    limit: Optional[str] = None


class OsvRange(OsvModel):
    type: Optional[str] = None
    events: list[OsvEvent] = Field(default_factory=list)


class OsvAffectedPackage(OsvModel):
    name: Optional[str] = None
    ecosystem: Optional[str] = None


class OsvAffected(OsvModel):
    package: Optional[OsvAffectedPackage] = None
    ranges: list[OsvRange] = Field(default_factory=list)
    versions: list[str] = Field(default_factory=list)
    database_specific: Optional[dict[str, Any]] = None


class OsvBatchResponse(OsvModel):
    # Entries stay raw so one bad entry is skipped without failing the batch
    results: list[Any]


class OsvVulnerability(OsvModel):
    id: str
    modified: Optional[str] = None
    published: Optional[str] = None
    aliases: list[str] = Field(default_factory=list)
    summary: Optional[str] = None
    details: Optional[str] = None
    severity: list[OsvSeverity] = Field(default_factory=list)
    references: list[OsvReference] = Field(default_factory=list)
    affected: list[OsvAffected] = Field(default_factory=list)
    database_specific: Optional[dict[str, Any]] = None


# --- GitHub ---

class GitHubContent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    path: str
    content: Optional[str] = None
    encoding: Optional[str] = None
    size: Optional[int] = None


class TreeEntry(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    path: str
    type: str
    size: Optional[int] = None


class RepositoryInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    full_name: str
    default_branch: str = "main"
    private: bool = False
    language: Optional[str] = None
