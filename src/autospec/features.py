from __future__ import annotations

import logging
import os
import re
import subprocess
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from autospec.errors import FeatureNotFoundError

logger = logging.getLogger(__name__)

FEATURE_ENV_VAR = "SPECIFY_FEATURE"
FEATURE_DIR_PATTERN = re.compile(r"^(\d{3})-(.+)$")


class DetectionMethod(str, Enum):
    ENV_VAR = "env_var"
    GIT_BRANCH = "git_branch"
    FALLBACK_RECENT = "fallback"
    EXPLICIT = "explicit"


DETECTION_LABELS = {
    DetectionMethod.ENV_VAR: f"via {FEATURE_ENV_VAR} env",
    DetectionMethod.GIT_BRANCH: "via git branch",
    DetectionMethod.FALLBACK_RECENT: "fallback - most recent",
    DetectionMethod.EXPLICIT: "explicitly specified",
}


@dataclass(frozen=True, slots=True)
class FeatureMetadata:
    name: str
    number: str
    directory: Path
    branch: str
    detection: DetectionMethod

    @property
    def slug(self) -> str:
        return f"{self.number}-{self.name}"

    def describe(self) -> str:
        return f"Using spec: {self.directory} ({DETECTION_LABELS[self.detection]})"


class SpecResolver:
    """Locates the active feature directory under ``specs_dir``."""

    def __init__(self, specs_dir: Path, *, repo_root: Path | None = None) -> None:
        self.specs_dir = specs_dir
        self.repo_root = repo_root or specs_dir.parent

    def _current_branch(self) -> str | None:
        try:
            proc = subprocess.run(
                ["git", "--no-pager", "rev-parse", "--abbrev-ref", "HEAD"],
                cwd=self.repo_root,
                text=True,
                capture_output=True,
            )
        except (FileNotFoundError, NotADirectoryError):
            return None
        if proc.returncode != 0:
            return None
        branch = proc.stdout.strip()
        return branch or None

    def _metadata_for(
        self, directory: Path, detection: DetectionMethod, branch: str = ""
    ) -> FeatureMetadata | None:
        match = FEATURE_DIR_PATTERN.match(directory.name)
        if match is None:
            return None
        return FeatureMetadata(
            name=match.group(2),
            number=match.group(1),
            directory=directory,
            branch=branch,
            detection=detection,
        )

    def _feature_dirs(self) -> list[Path]:
        if not self.specs_dir.is_dir():
            return []
        return [
            path
            for path in self.specs_dir.iterdir()
            if path.is_dir() and FEATURE_DIR_PATTERN.match(path.name)
        ]

    def find_directory(self, identifier: str) -> Path:
        exact = self.specs_dir / identifier
        if exact.is_dir():
            return exact
        candidates = self._feature_dirs()
        if re.fullmatch(r"\d{3}", identifier):
            matches = [path for path in candidates if path.name.startswith(f"{identifier}-")]
        else:
            matches = [path for path in candidates if path.name.endswith(f"-{identifier}")]
        if len(matches) == 1:
            return matches[0]
        if len(matches) > 1:
            names = ", ".join(sorted(path.name for path in matches))
            raise FeatureNotFoundError(f"Multiple specs match '{identifier}': {names}")
        raise FeatureNotFoundError(
            f"Spec not found: {identifier}. Run the specify stage to create it "
            "or check the spec name."
        )

    def resolve_explicit(self, identifier: str) -> FeatureMetadata:
        directory = self.find_directory(identifier)
        metadata = self._metadata_for(
            directory, DetectionMethod.EXPLICIT, self._current_branch() or ""
        )
        if metadata is None:
            raise FeatureNotFoundError(f"Could not parse spec directory name: {directory.name}")
        return metadata

    def detect_current(self) -> FeatureMetadata:
        env_value = os.environ.get(FEATURE_ENV_VAR, "").strip()
        if env_value:
            directory = self.specs_dir / env_value
            metadata = self._metadata_for(directory, DetectionMethod.ENV_VAR)
            if metadata is not None and directory.is_dir():
                return metadata
            logger.debug("Ignoring %s=%s: no matching spec directory", FEATURE_ENV_VAR, env_value)

        branch = self._current_branch()
        if branch and FEATURE_DIR_PATTERN.match(branch):
            directory = self.specs_dir / branch
            if directory.is_dir():
                metadata = self._metadata_for(directory, DetectionMethod.GIT_BRANCH, branch)
                if metadata is not None:
                    return metadata

        candidates = self._feature_dirs()
        if not candidates:
            raise FeatureNotFoundError(
                f"No spec directories found in {self.specs_dir}. "
                "Use --spec to select one explicitly or run the specify stage."
            )
        most_recent = max(candidates, key=lambda path: path.stat().st_mtime)
        metadata = self._metadata_for(
            most_recent, DetectionMethod.FALLBACK_RECENT, branch or ""
        )
        assert metadata is not None
        return metadata

    def resolve(self, explicit: str | None = None) -> FeatureMetadata:
        if explicit:
            return self.resolve_explicit(explicit)
        return self.detect_current()
