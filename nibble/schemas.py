from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from nibble.response import now_iso


class ApiError(BaseModel):
	model_config = ConfigDict(extra="forbid")

	code: str
	message: str
	evidence: List[str] = Field(default_factory=list)
	retry_after: Optional[int] = None


class ApiEnvelope(BaseModel):
	model_config = ConfigDict(extra="allow")

	ok: bool
	generated_at: str
	request_id: Optional[str] = None
	data: Optional[Dict[str, Any]] = None
	error: Optional[ApiError] = None


class Repository(BaseModel):
	model_config = ConfigDict(extra="ignore")

	id: Optional[int] = None
	full_name: str = Field(..., min_length=3)
	default_branch: Optional[str] = None
	language: Optional[str] = None


class Installation(BaseModel):
	"""Persisted binding between an account and its monitored repositories."""

	model_config = ConfigDict(extra="ignore", populate_by_name=True)

	id: int
	account: str = ""
	repositories: List[Repository] = Field(default_factory=list)
	last_run: Optional[str] = Field(default=None, alias="lastNibble")
	enabled: bool = True
	created_at: str = Field(default_factory=now_iso, alias="createdAt")
	updated_at: str = Field(default_factory=now_iso, alias="updatedAt")

	def has_repository(self, full_name: str) -> bool:
		return any(repo.full_name == full_name for repo in self.repositories)

	def to_record(self) -> Dict[str, Any]:
		return self.model_dump(by_alias=True)


class InstallationSummary(BaseModel):
	model_config = ConfigDict(extra="ignore")

	id: int
	account: str = ""
	created_at: Optional[str] = None


# GitHub webhook payloads


class AccountPayload(BaseModel):
	model_config = ConfigDict(extra="ignore")

	login: Optional[str] = None
	slug: Optional[str] = None

	@property
	def name(self) -> str:
		return self.login or self.slug or ""


class InstallationPayload(BaseModel):
	model_config = ConfigDict(extra="ignore")

	id: int
	account: AccountPayload = Field(default_factory=AccountPayload)
	repositories: List[Repository] = Field(default_factory=list)
	created_at: Optional[Union[str, int]] = None


class InstallationEvent(BaseModel):
	model_config = ConfigDict(extra="ignore")

	action: str
	installation: InstallationPayload
	repositories: List[Repository] = Field(default_factory=list)


class InstallationRepositoriesEvent(BaseModel):
	model_config = ConfigDict(extra="ignore")

	action: str
	installation: InstallationPayload
	repositories_added: List[Repository] = Field(default_factory=list)
	repositories_removed: List[Repository] = Field(default_factory=list)


class PushRepository(BaseModel):
	model_config = ConfigDict(extra="ignore")

	id: Optional[int] = None
	full_name: str
	default_branch: Optional[str] = None
	language: Optional[str] = None
	owner: AccountPayload = Field(default_factory=AccountPayload)

	def as_repository(self) -> Repository:
		return Repository(
			id=self.id,
			full_name=self.full_name,
			default_branch=self.default_branch,
			language=self.language,
		)


class InstallationRef(BaseModel):
	model_config = ConfigDict(extra="ignore")

	id: int


class PushEvent(BaseModel):
	model_config = ConfigDict(extra="ignore")

	ref: str
	repository: PushRepository
	installation: Optional[InstallationRef] = None
