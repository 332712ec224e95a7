from __future__ import annotations

from typing import Annotated, Any

from pydantic import AfterValidator, BaseModel, ConfigDict, Field

from .models import JobType


def _reject_parent_refs(value: str) -> str:
    if ".." in value:
        raise ValueError("job id must not contain '..'")
    return value


# Job ids name documents on disk (``active-streams/<jobId>``).
SafeJobId = Annotated[
    str,
    Field(pattern=r"^[A-Za-z0-9_.:-]+$", max_length=128),
    AfterValidator(_reject_parent_refs),
]


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CreateJobRequest(_CamelModel):
    type: JobType
    target_id: str | None = Field(default=None, alias="targetId")
    input: dict[str, Any] = Field(default_factory=dict)
    id: SafeJobId | None = None


class ChatStreamRequest(_CamelModel):
    prompt: str = Field(min_length=1)
    thread_id: str | None = Field(default=None, alias="threadId")
    job_id: SafeJobId | None = Field(default=None, alias="jobId")
    learning_mode: bool = Field(default=False, alias="learningMode")
    use_github_tools: bool = Field(default=False, alias="useGitHubTools")
    repos: list[str] = Field(default_factory=list)


class ThreadUpsertRequest(_CamelModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    title: str = "New thread"
    messages: list[dict[str, Any]] = Field(default_factory=list)
    is_streaming: bool = Field(default=False, alias="isStreaming")
