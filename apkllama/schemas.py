from __future__ import annotations

from datetime import datetime

from pydantic import AliasChoices, BaseModel, Field, field_validator

from apkllama.types import Finding, Severity


class FindingInput(BaseModel):
    id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    severity: Severity
    category: str
    file_path: str = Field(validation_alias=AliasChoices("file", "file_path", "filePath"))
    line_number: int = Field(default=-1, validation_alias=AliasChoices("line", "line_number", "lineNumber"))
    confidence: float = 1.0
    description: str = ""
    evidence: str = ""
    tags: list[str] = Field(default_factory=list)

    @field_validator("severity", mode="before")
    @classmethod
    def parse_severity(cls, value: object) -> Severity:
        if isinstance(value, Severity):
            return value
        if isinstance(value, str):
            return Severity.parse(value)
        raise ValueError("severity must be a string")

    def to_finding(self) -> Finding:
        return Finding(
            id=self.id,
            title=self.title,
            severity=self.severity,
            category=self.category,
            file_path=self.file_path,
            evidence=self.evidence,
            line_number=self.line_number,
            description=self.description,
            confidence=self.confidence,
            tags=tuple(self.tags),
        )


class FindingsDocument(BaseModel):
    findings: list[FindingInput]
    total: int | None = None


class ReportEntry(BaseModel):
    request_id: str
    finding_id: str
    title: str
    severity: str
    line_number: int
    status: str
    response: str | None = None
    error: str | None = None
    failure_kind: str | None = None
    retry_count: int
    prompt_tokens: int
    response_tokens: int
    created_at: datetime
    updated_at: datetime


class ReportSummary(BaseModel):
    total: int
    completed: int
    failed: int
    cancelled: int
    percent: int


class ReportDocument(BaseModel):
    model: str
    generated_at: datetime
    summary: ReportSummary
    entries: list[ReportEntry]
