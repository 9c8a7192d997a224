"""Parse runbooks from Markdown format."""

import re
import textwrap
from pathlib import Path
from typing import Any

import yaml

from runbookctl.core.exceptions import ParseError
from runbookctl.runbooks.schema import EDIT_LANGUAGES, Runbook, Step, StepKind
from runbookctl.runbooks.yaml_schema import FrontMatterSchema, parse_front_matter

KNOWN_OPTIONS = ("if", "edit", "shell", "timeout")


class MarkdownRunbookParser:
    """Parse runbooks from Markdown files.

    Expected format:
    ```markdown
    ---
    tags: [hpc]
    prelude: source ~/miniconda3/etc/profile.d/conda.sh
    ---
    # Runbook: My Runbook Name

    Description of the runbook.

    ## Variables

    - `user`: Cluster account (default: alice)
    - `jobid`: Allocated job

    ## Steps

    ### 1. Step Name

    Description of the step.

    ```bash
    ssh {{ user }}@login
    ```

    ### 2. Load a newer GCC [if: only if a GCC version error occurs]

    ```bash
    module load gcc/11.2.0
    ```

    ### 3. Patch the launch file [edit: launch/demo.launch.py]

    ```diff
    + rviz_config_file = "moveit.rviz"
    ```
    ```
    """

    # Regex patterns
    TITLE_PATTERN = re.compile(r"^#[ \t]+(?:Runbook:[ \t]*)?(.+?)[ \t]*$", re.MULTILINE)
    SECTION_PATTERN = re.compile(r"^##[ \t]+(.+?)[ \t]*$", re.MULTILINE)
    STEP_PATTERN = re.compile(
        r"^###[ \t]+(?:(\d+)\.[ \t]+)?(.+?)(?:[ \t]*\[(.+?)\])?[ \t]*$", re.MULTILINE
    )
    # Fences may be indented, e.g. under a list item
    CODE_BLOCK_PATTERN = re.compile(
        r"^([ \t]*)```[ \t]*([\w+-]*)[^\n]*\n(.*?)^[ \t]*```[ \t]*$", re.MULTILINE | re.DOTALL
    )
    VARIABLE_PATTERN = re.compile(
        r"^-\s+`(\w+)`:\s*(.+?)(?:\s*\(default:\s*(.+?)\))?$", re.MULTILINE
    )
    FRONTMATTER_PATTERN = re.compile(r"^---\n(.*?)\n---", re.DOTALL)
    DIFF_TARGET_PATTERN = re.compile(r"^\+\+\+\s+(?:b/)?(\S+)", re.MULTILINE)

    def parse_file(self, file_path: str | Path) -> Runbook:
        """Parse a Markdown runbook file."""
        path = Path(file_path)
        if not path.exists():
            raise ParseError(f"Runbook file not found: {path}")

        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise ParseError(f"Cannot read {path}: {e}")
        return self.parse(content, source_file=str(path))

    def parse(self, content: str, source_file: str | None = None) -> Runbook:
        """Parse Markdown content to Runbook."""
        meta = FrontMatterSchema()
        fm_match = self.FRONTMATTER_PATTERN.match(content)
        if fm_match:
            try:
                data = yaml.safe_load(fm_match.group(1))
            except yaml.YAMLError as e:
                raise ParseError(f"Invalid front matter: {e}")
            meta = parse_front_matter(data if data is not None else {})
            content = content[fm_match.end() :].strip()

        code_spans = self._code_spans(content)

        title_match = self._first_outside(self.TITLE_PATTERN.finditer(content), code_spans)
        if title_match:
            name = title_match.group(1).strip()
            title_end = title_match.end()
        elif meta.name:
            name = meta.name
            title_end = 0
        else:
            raise ParseError("Runbook must have a title (# Runbook: Name)")

        section_matches = self._outside(self.SECTION_PATTERN.finditer(content), code_spans)

        # Description is the text between title and first section
        following = [m for m in section_matches if m.start() >= title_end]
        if following:
            description = content[title_end : following[0].start()].strip()
        else:
            description = content[title_end:].strip()
        if meta.description is not None:
            description = meta.description

        variables: dict[str, Any] = dict(meta.variables)
        steps: list[Step] = []

        for section_name, start, end in self._split_sections(content, section_matches):
            section_lower = section_name.lower()

            if section_lower == "variables":
                for var_name, value in self._parse_variables(content[start:end]).items():
                    variables.setdefault(var_name, value)

            elif section_lower == "steps":
                steps = self._parse_steps(content, start, end, code_spans)

        return Runbook(
            name=name,
            description=description,
            steps=tuple(steps),
            variables=variables,
            environment=meta.environment_text(),
            prelude=meta.prelude.strip(),
            tags=tuple(meta.tags),
            source_file=source_file,
        )

    def _code_spans(self, content: str) -> list[tuple[int, int]]:
        return [m.span() for m in self.CODE_BLOCK_PATTERN.finditer(content)]

    @staticmethod
    def _inside(pos: int, spans: list[tuple[int, int]]) -> bool:
        return any(start <= pos < end for start, end in spans)

    def _outside(self, matches: Any, spans: list[tuple[int, int]]) -> list[re.Match]:
        """Drop heading matches that sit inside fenced code."""
        return [m for m in matches if not self._inside(m.start(), spans)]

    def _first_outside(self, matches: Any, spans: list[tuple[int, int]]) -> re.Match | None:
        found = self._outside(matches, spans)
        return found[0] if found else None

    def _split_sections(
        self, content: str, matches: list[re.Match]
    ) -> list[tuple[str, int, int]]:
        """Split content into (name, start, end) sections by ## headers."""
        sections: list[tuple[str, int, int]] = []

        for i, match in enumerate(matches):
            name = match.group(1).strip()
            start = match.end()
            end = matches[i + 1].start() if i + 1 < len(matches) else len(content)
            sections.append((name, start, end))

        return sections

    def _parse_variables(self, content: str) -> dict[str, Any]:
        """Parse variables section."""
        variables: dict[str, Any] = {}

        for match in self.VARIABLE_PATTERN.finditer(content):
            var_name = match.group(1)
            default = match.group(3)
            if default:
                # Kept as text: "11.10" must not become 11.1
                variables[var_name] = default.strip().strip("`").strip("'\"")
            else:
                variables[var_name] = None

        return variables

    def _parse_steps(
        self,
        content: str,
        start: int,
        end: int,
        code_spans: list[tuple[int, int]],
    ) -> list[Step]:
        """Parse steps section."""
        steps: list[Step] = []
        step_matches = [
            m
            for m in self.STEP_PATTERN.finditer(content, start, end)
            if not self._inside(m.start(), code_spans)
        ]

        for i, match in enumerate(step_matches):
            step_name = match.group(2).strip()
            step_options = match.group(3)

            step_start = match.end()
            step_end = step_matches[i + 1].start() if i + 1 < len(step_matches) else end
            step_content = content[step_start:step_end].lstrip("\n").rstrip()

            steps.append(self._parse_step(i + 1, step_name, step_options, step_content))

        return steps

    def _parse_step(
        self,
        index: int,
        step_name: str,
        options_str: str | None,
        content: str,
    ) -> Step:
        """Parse a single step."""
        options = self._parse_step_options(index, options_str)

        code_blocks = self.CODE_BLOCK_PATTERN.findall(content)
        language = ""
        body = ""
        if code_blocks:
            language = code_blocks[0][1].lower()
            body = "\n".join(
                (textwrap.dedent(code) if indent else code).rstrip("\n")
                for indent, _, code in code_blocks
            ).strip("\n")

        if not body.strip():
            raise ParseError(
                f"Step {index} ('{step_name}') has no body",
                step_index=index,
            )

        # Description is the text before the first code block
        description = self.CODE_BLOCK_PATTERN.split(content)[0].strip()

        target = options.get("edit")
        is_edit = bool(target) or language in EDIT_LANGUAGES
        if is_edit and not target:
            diff_target = self.DIFF_TARGET_PATTERN.search(body)
            target = diff_target.group(1) if diff_target else None

        timeout = options.get("timeout")
        if timeout is not None:
            try:
                timeout = int(timeout)
            except ValueError:
                raise ParseError(
                    f"Step {index} ('{step_name}') has a non-integer timeout: {timeout}",
                    step_index=index,
                )
            if timeout <= 0:
                raise ParseError(
                    f"Step {index} ('{step_name}') has a non-positive timeout: {timeout}",
                    step_index=index,
                )

        return Step(
            title=step_name,
            body=body,
            kind=StepKind.EDIT if is_edit else StepKind.COMMAND,
            precondition=options.get("if"),
            description=description,
            target=target,
            language=language or ("diff" if is_edit else "bash"),
            shell=options.get("shell"),
            timeout=timeout,
        )

    def _parse_step_options(self, index: int, options_str: str | None) -> dict[str, Any]:
        """Parse step options from [key: value, key: value] format.

        A comma not followed by a known key belongs to the previous value, so
        free-text preconditions may contain commas.
        """
        options: dict[str, Any] = {}

        if not options_str:
            return options

        current: str | None = None
        for part in options_str.split(","):
            key, sep, value = part.partition(":")
            key = key.strip().lower()
            if sep and key in KNOWN_OPTIONS:
                current = key
                options[key] = value.strip()
            elif current is not None:
                options[current] = f"{options[current]},{part}".strip()
            else:
                raise ParseError(
                    f"Step {index} has an unknown option '{part.strip()}'",
                    step_index=index,
                )

        return options
