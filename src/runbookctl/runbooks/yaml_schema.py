"""YAML runbook schema validation."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from runbookctl.core.exceptions import ParseError
from runbookctl.runbooks.schema import EDIT_LANGUAGES, Runbook, Step, StepKind


class EditSchema(BaseModel):
    """File edit instruction."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    target: str
    body: str = Field(alias="diff")


class StepSchema(BaseModel):
    """Schema for a runbook step."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    title: str = Field(alias="name")
    run: str | None = None
    edit: EditSchema | None = None
    precondition: str | None = Field(default=None, alias="if")
    description: str = ""
    language: str | None = None
    shell: str | None = None
    timeout: int | None = None

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("title must not be empty")
        return v.strip()

    @field_validator("timeout")
    @classmethod
    def validate_timeout(cls, v: int | None) -> int | None:
        if v is not None and v <= 0:
            raise ValueError("timeout must be positive")
        return v

    @model_validator(mode="after")
    def validate_body(self) -> "StepSchema":
        """Ensure step has exactly one non-empty body."""
        if self.run is not None and self.edit is not None:
            raise ValueError("step cannot have both 'run' and 'edit'")
        if self.edit is None and not (self.run or "").strip():
            raise ValueError("step has no body: set 'run' or 'edit'")
        if self.edit is not None and not self.edit.body.strip():
            raise ValueError("edit step has no body")
        return self

    def to_step(self) -> Step:
        if self.edit is not None:
            return Step(
                title=self.title,
                body=self.edit.body.strip("\n"),
                kind=StepKind.EDIT,
                precondition=self.precondition,
                description=self.description.strip(),
                target=self.edit.target,
                language=self.language or EDIT_LANGUAGES[0],
            )
        return Step(
            title=self.title,
            body=(self.run or "").strip("\n"),
            kind=StepKind.COMMAND,
            precondition=self.precondition,
            description=self.description.strip(),
            language=self.language or "bash",
            shell=self.shell,
            timeout=self.timeout,
        )


class RunbookMetaSchema(BaseModel):
    """Runbook-level fields shared by YAML documents and Markdown front matter."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    description: str = ""
    variables: dict[str, Any] = Field(default_factory=dict)
    environment: dict[str, Any] = Field(default_factory=dict)
    prelude: str = ""
    tags: list[str] = Field(default_factory=list)

    @field_validator("variables", mode="before")
    @classmethod
    def stringify_variables(cls, v: Any) -> Any:
        # Values are replayed as text
        if not isinstance(v, dict):
            return v
        return {k: val if val is None or isinstance(val, str) else str(val) for k, val in v.items()}

    @field_validator("tags", mode="before")
    @classmethod
    def single_tag(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [v]
        return v

    def environment_text(self) -> dict[str, str]:
        return {str(k): str(v) for k, v in self.environment.items()}


class RunbookSchema(RunbookMetaSchema):
    """Schema for a runbook definition."""

    name: str = Field(alias="title")
    steps: list[StepSchema] = Field(default_factory=list)


class FrontMatterSchema(RunbookMetaSchema):
    """Front matter of a Markdown runbook; unrelated note keys are ignored."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: str | None = Field(default=None, alias="title")
    # None means the prose under the title is the description
    description: str | None = None


def _describe_error(error: ValidationError) -> tuple[str, int | None]:
    step_index = None
    for detail in error.errors():
        loc = detail.get("loc", ())
        if len(loc) >= 2 and loc[0] == "steps" and isinstance(loc[1], int):
            step_index = loc[1] + 1
            break

    first = error.errors()[0]
    where = ".".join(str(p) for p in first.get("loc", ()))
    message = f"{where}: {first.get('msg')}" if where else str(first.get("msg"))
    if step_index is not None:
        message = f"Step {step_index} is malformed - {message}"
    return message, step_index


def parse_front_matter(data: Any) -> FrontMatterSchema:
    """Validate Markdown front matter.

    Raises:
        ParseError: If a known field has the wrong shape
    """
    if not isinstance(data, dict):
        raise ParseError("Front matter must be a YAML mapping")

    try:
        return FrontMatterSchema.model_validate(data)
    except ValidationError as e:
        message, _ = _describe_error(e)
        raise ParseError(f"Invalid front matter - {message}")


def parse_yaml_runbook(data: Any, source_file: str | None = None) -> Runbook:
    """Validate a loaded YAML document and build a Runbook.

    Raises:
        ParseError: If the document is not a valid runbook
    """
    if not isinstance(data, dict):
        raise ParseError("YAML runbook must be a mapping")

    try:
        schema = RunbookSchema.model_validate(data)
    except ValidationError as e:
        message, step_index = _describe_error(e)
        raise ParseError(message, step_index=step_index)

    return Runbook(
        name=schema.name,
        description=schema.description.strip(),
        steps=tuple(s.to_step() for s in schema.steps),
        variables=schema.variables,
        environment=schema.environment_text(),
        prelude=schema.prelude.strip(),
        tags=tuple(schema.tags),
        source_file=source_file,
    )
