"""Wire models for the index check and two-phase sync exchanges."""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from .errors import InvalidRequestError


class ChunkKind(str, Enum):
    """Semantic kind of a code fragment."""

    FUNCTION = "function"
    CLASS = "class"
    METHOD = "method"
    INTERFACE = "interface"
    TYPE = "type"
    ENUM = "enum"
    STRUCT = "struct"
    IMPL = "impl"
    TRAIT = "trait"
    BLOCK = "block"


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class ChunkMeta(WireModel):
    """Fragment metadata sent in phase 1. Content is deliberately absent."""

    hash: str = Field(min_length=1)
    kind: ChunkKind
    name: str | None = None
    line_range: tuple[int, int]
    size: int = Field(ge=0)
    # Relative path of the source file, used to locate search results
    file_path: str | None = None


class ChunkWithContent(ChunkMeta):
    """Fragment with its content, sent only for hashes the server needs."""

    content: str
    language_id: str = "text"

    @field_validator("content")
    @classmethod
    def _utf8_encodable(cls, value: str) -> str:
        # Lone surrogates survive JSON decoding but cannot be hashed
        try:
            value.encode("utf-8")
        except UnicodeEncodeError as e:
            raise ValueError(f"content is not valid UTF-8 text at position {e.start}") from e
        return value


class ProjectRequest(WireModel):
    project_id: str = Field(min_length=1)
    merkle_root: str = Field(min_length=1)

    @field_validator("project_id", "merkle_root")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value


class RootCheckRequest(ProjectRequest):
    pass


class RootCheckResponse(WireModel):
    changed: bool
    server_root: str | None


class Phase1Request(ProjectRequest):
    phase: Literal[1] = 1
    chunks: list[ChunkMeta]
    # Files deleted since the last sync; their fragments leave the search index
    removed_paths: list[str] = Field(default_factory=list)


class Phase1Response(WireModel):
    needed: list[str]
    cached: list[str]


class Phase2Request(ProjectRequest):
    phase: Literal[2] = 2
    chunks: list[ChunkWithContent]


class Phase2Response(WireModel):
    status: Literal["stored"] = "stored"
    received: list[str]
    merkle_root: str
    message: str = ""


class InitRequest(ProjectRequest):
    chunks: list[ChunkWithContent]


class InitResponse(WireModel):
    status: Literal["indexed"] = "indexed"
    merkle_root: str
    chunks_stored: int
    chunks_skipped: int


class HealthResponse(WireModel):
    status: Literal["ok"] = "ok"
    timestamp: str
    version: str


class SearchRequest(WireModel):
    project_id: str = Field(min_length=1)
    query: str = Field(min_length=1)
    top_k: int = Field(default=10, ge=1, le=100, strict=True)

    @field_validator("project_id", "query")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value


class SearchHit(WireModel):
    hash: str
    file_path: str | None
    line_range: tuple[int, int]
    kind: str
    name: str | None
    summary: str
    score: float


class SearchResponse(WireModel):
    results: list[SearchHit]


class ErrorBody(WireModel):
    error: str
    message: str
    details: Any = None


M = TypeVar("M", bound=BaseModel)


def parse_request(model: type[M], body: Any) -> M:
    """
    Validate a decoded JSON body against a request model.

    Raises:
        InvalidRequestError: With the first failing field in the message
    """
    if not isinstance(body, dict):
        raise InvalidRequestError("Request body must be a JSON object")
    try:
        return model.model_validate(body)
    except ValidationError as e:
        errors = [
            {"loc": list(err["loc"]), "msg": err["msg"], "type": err["type"]}
            for err in e.errors(include_url=False)
        ]
        first = errors[0]
        location = ".".join(str(part) for part in first["loc"]) or "body"
        if first["type"] == "missing":
            message = f"{location} is required"
        else:
            message = f"{location}: {first['msg']}"
        raise InvalidRequestError(message, details=errors) from e


def parse_sync_request(body: Any) -> Phase1Request | Phase2Request:
    """Dispatch a /v1/index/sync body on its ``phase`` field."""
    if not isinstance(body, dict):
        raise InvalidRequestError("Request body must be a JSON object")
    phase = body.get("phase")
    # JSON true == 1 in Python; only real integers select a phase
    if isinstance(phase, bool):
        raise InvalidRequestError("phase must be 1 or 2")
    if phase == 1:
        return parse_request(Phase1Request, body)
    if phase == 2:
        return parse_request(Phase2Request, body)
    raise InvalidRequestError("phase must be 1 or 2")
