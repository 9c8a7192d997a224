"""Display-side view of a runbook."""

from dataclasses import dataclass
from typing import Any, Iterator

from runbookctl.runbooks.schema import Runbook, Step, StepKind, substitute_variables


@dataclass(frozen=True)
class StepDescription:
    """What a human needs to carry out one step by hand."""

    index: int
    total: int
    title: str
    kind: StepKind
    body: str
    language: str
    precondition: str | None = None
    description: str = ""
    target: str | None = None

    @property
    def heading(self) -> str:
        return f"Step {self.index}/{self.total}: {self.title}"

    def render(self) -> str:
        """Plain-text rendering, identical on every call."""
        lines = [self.heading]
        if self.precondition:
            lines.append(f"Precondition: {self.precondition}")
        if self.description:
            lines.append(self.description)
        if self.kind == StepKind.EDIT:
            lines.append(f"Edit {self.target or '(unspecified file)'}:")
        lines.append(self.body)
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "title": self.title,
            "kind": self.kind.value,
            "precondition": self.precondition,
            "description": self.description,
            "target": self.target,
            "language": self.language,
            "body": self.body,
        }


class Presentation:
    """Lazy, finite and restartable sequence of step descriptions.

    Each iteration starts again from the first step; nothing is cached
    between iterations and the runbook itself is never modified.
    """

    def __init__(self, runbook: Runbook, variables: dict[str, Any] | None = None):
        self._runbook = runbook
        self._variables = dict(variables or {})

    @property
    def runbook(self) -> Runbook:
        return self._runbook

    def __len__(self) -> int:
        return len(self._runbook.steps)

    def __iter__(self) -> Iterator[StepDescription]:
        total = len(self._runbook.steps)
        for index, step in enumerate(self._runbook.steps, start=1):
            yield self._describe(index, total, step)

    def _describe(self, index: int, total: int, step: Step) -> StepDescription:
        return StepDescription(
            index=index,
            total=total,
            title=step.title,
            kind=step.kind,
            body=substitute_variables(step.body, self._variables),
            language=step.language,
            precondition=step.precondition,
            description=step.description,
            target=substitute_variables(step.target, self._variables) if step.target else None,
        )

    def render(self) -> str:
        """Render every step as one plain-text document."""
        return "\n\n".join(description.render() for description in self)


def present(runbook: Runbook, variables: dict[str, Any] | None = None) -> Presentation:
    """Describe a runbook's steps for display."""
    return Presentation(runbook, variables)
