"""Pytest fixtures for runbookctl tests."""

import os
from pathlib import Path
from typing import Generator

import pytest
from click.testing import CliRunner

from runbookctl.config import RunbookctlConfig, ProfileConfig, GlobalConfig
from runbookctl.core.context import RunbookctlContext
from runbookctl.core.output import OutputFormat


SAMPLE_MARKDOWN = """\
---
tags: [hpc, sample]
---
# Runbook: Sample setup

Prepare a build environment.

## Variables

- `env_name`: Conda environment (default: robosim)
- `user`: Cluster account

## Steps

### 1. Create the environment

```bash
conda create -n {{ env_name }} python=3.8
```

### 2. Load a newer GCC [if: only if a GCC version error occurs]

```bash
module load gcc/11.2.0
```

### 3. Build

Run from the workspace root.

```bash
colcon build --mixin debug
```
"""


@pytest.fixture
def cli_runner() -> CliRunner:
    """Create a Click CLI runner."""
    return CliRunner()


@pytest.fixture
def mock_config(tmp_path: Path) -> RunbookctlConfig:
    """Create a mock configuration."""
    return RunbookctlConfig(
        global_settings=GlobalConfig(audit_dir=str(tmp_path / "runs")),
        profiles={
            "default": ProfileConfig(variables={"user": "alice", "host": "login.example.edu"}),
        },
    )


@pytest.fixture
def mock_context(mock_config: RunbookctlConfig) -> RunbookctlContext:
    """Create a mock runbookctl context."""
    return RunbookctlContext(
        config=mock_config,
        profile="default",
        output_format=OutputFormat.TABLE,
        verbose=0,
        quiet=False,
        dry_run=False,
        color=False,
    )


@pytest.fixture(autouse=True)
def clean_env(tmp_path: Path) -> Generator[None, None, None]:
    """Clean environment variables before each test and keep run history in tmp."""
    env_vars = [name for name in os.environ if name.startswith("RUNBOOKCTL_")]

    original = {k: os.environ.get(k) for k in env_vars}

    for k in env_vars:
        os.environ.pop(k, None)
    os.environ["RUNBOOKCTL_AUDIT_DIR"] = str(tmp_path / "audit")

    yield

    os.environ.pop("RUNBOOKCTL_AUDIT_DIR", None)
    for k, v in original.items():
        if v is not None:
            os.environ[k] = v


@pytest.fixture
def sample_markdown() -> str:
    return SAMPLE_MARKDOWN


@pytest.fixture
def sample_runbook_file(tmp_path: Path) -> Path:
    """Write the sample Markdown runbook to disk."""
    path = tmp_path / "sample.md"
    path.write_text(SAMPLE_MARKDOWN)
    return path


@pytest.fixture
def three_step_yaml(tmp_path: Path) -> Path:
    """Three command steps; the second one fails."""
    path = tmp_path / "three.yaml"
    path.write_text(
        "name: Three steps\n"
        "steps:\n"
        "  - title: First\n"
        "    run: echo one\n"
        "  - title: Second\n"
        "    run: exit 3\n"
        "  - title: Third\n"
        "    run: echo three\n"
    )
    return path


@pytest.fixture
def temp_config_file(tmp_path: Path) -> str:
    """Create a temporary config file."""
    config_content = """
version: "1"
global:
  output_format: table
  shell: /bin/sh
profiles:
  default:
    variables:
      user: alice
  cluster:
    variables:
      user: bob
      host: hpc.example.edu
"""
    config_file = tmp_path / "config.yaml"
    config_file.write_text(config_content)
    return str(config_file)
