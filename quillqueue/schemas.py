from datetime import datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, PrivateAttr, field_validator

from .models import TERMINAL_STATUSES, Job, JobStatus, JobType

def _clean_keywords(value: list[str]) -> list[str]:
    return [k.strip() for k in value if k and k.strip()]

class TitleJobCreate(BaseModel):
    keywords: list[str] = Field(min_length=1, max_length=50)
    tone: str | None = Field(default=None, max_length=200)
    target_audience: str | None = Field(
        default=None,
        max_length=500,
        validation_alias=AliasChoices("target_audience", "targetAudience"),
    )
    count: int = Field(default=5, ge=1, le=20)
    auto_advance: bool = Field(default=False, validation_alias=AliasChoices("auto_advance", "autoAdvance"))

    @field_validator("keywords")
    @classmethod
    def keywords_not_blank(cls, v: list[str]) -> list[str]:
        cleaned = _clean_keywords(v)
        if not cleaned:
            raise ValueError("at least one non-blank keyword is required")
        return cleaned

class OutlineJobCreate(BaseModel):
    title: str = Field(min_length=1, max_length=500)
    keywords: list[str] = Field(default_factory=list, max_length=50)
    instructions: str | None = Field(default=None, max_length=5_000)

    @field_validator("keywords")
    @classmethod
    def strip_keywords(cls, v: list[str]) -> list[str]:
        return _clean_keywords(v)

class BlogJobCreate(BaseModel):
    title: str = Field(min_length=1, max_length=500)
    outline: dict[str, Any]
    keywords: list[str] = Field(default_factory=list, max_length=50)
    instructions: str | None = Field(default=None, max_length=5_000)

    @field_validator("keywords")
    @classmethod
    def strip_keywords(cls, v: list[str]) -> list[str]:
        return _clean_keywords(v)

PAYLOAD_SCHEMAS: dict[JobType, type[BaseModel]] = {
    JobType.title_generation: TitleJobCreate,
    JobType.outline_generation: OutlineJobCreate,
    JobType.blog_generation: BlogJobCreate,
}

class WorkItem(BaseModel):
    """One delivery of a job to a stage queue; carries the payload so workers skip a lookup."""

    job_id: str
    job_type: JobType
    payload: dict[str, Any]

    # exact bytes popped from the backend, needed to ack/remove that delivery
    _raw: str | None = PrivateAttr(default=None)

    def encode(self) -> str:
        return self.model_dump_json()

    @classmethod
    def decode(cls, raw: str) -> "WorkItem":
        item = cls.model_validate_json(raw)
        item._raw = raw
        return item

    @property
    def raw(self) -> str:
        return self._raw if self._raw is not None else self.encode()

class JobOut(BaseModel):
    id: str
    type: JobType
    status: JobStatus
    payload: dict[str, Any]
    result: Any | None = None
    error: str | None = None
    attempts: int
    max_attempts: int
    last_error: str | None = None
    retries_disabled: bool = False
    source_job_id: str | None = None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @classmethod
    def from_job(cls, job: Job) -> "JobOut":
        return cls(
            id=job.id,
            type=job.type,
            status=job.status,
            payload=job.payload,
            result=job.result,
            error=job.error,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            last_error=job.last_error,
            retries_disabled=job.retries_disabled,
            source_job_id=job.source_job_id,
            created_at=job.created_at,
            updated_at=job.updated_at,
            started_at=job.started_at,
            finished_at=job.finished_at,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

# snapshot returned by the store and the coordinator's status()
JobSnapshot = JobOut

class OutlineResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str
    seo_keywords: list[str] = Field(default_factory=list, validation_alias=AliasChoices("seo_keywords", "seoKeywords"))
    meta_description: str = Field(default="", validation_alias=AliasChoices("meta_description", "metaDescription"))
    suggested_images: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("suggested_images", "suggestedImages")
    )
    structure: dict[str, Any] = Field(default_factory=dict)

class BlogResult(BaseModel):
    title: str
    content: str
    html_content: str
    word_count: int

class AdvanceRequest(BaseModel):
    titles: list[str] = Field(default_factory=list, max_length=50)
    instructions: str | None = Field(default=None, max_length=5_000)

class AdvanceOut(BaseModel):
    source_job_id: str
    job_ids: list[str]
