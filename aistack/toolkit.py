"""Detection of the NVIDIA Container Toolkit through the docker command."""

from __future__ import annotations

import json
import subprocess
from dataclasses import dataclass
from typing import Any, Mapping

from aistack.eventlog import Level, Logger


@dataclass
class ContainerToolkitReport:
    """Whether containers can use the GPU, and the toolkit version if known."""

    docker_support: bool = False
    toolkit_version: str = ""
    error_message: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Return the report in its JSON shape; empty strings are left out."""
        data: dict[str, Any] = {"docker_support": self.docker_support}
        if self.toolkit_version:
            data["toolkit_version"] = self.toolkit_version
        if self.error_message:
            data["error_message"] = self.error_message
        return data


def parse_toolkit_version(output: str) -> str:
    """Return the last word of the first line mentioning "version", or ""."""
    for line in output.split("\n"):
        if "version" in line:
            parts = line.split()
            if parts:
                return parts[-1]
    return ""


class _CommandFailed(Exception):
    pass


def _run(args: list[str]) -> str:
    """Run a command and return its stdout; raise _CommandFailed when it fails."""
    try:
        result = subprocess.run(args, capture_output=True, text=True, check=False)
    except OSError as exc:
        raise _CommandFailed(str(exc)) from exc
    if result.returncode != 0:
        raise _CommandFailed(f"exit status {result.returncode}")
    return result.stdout or ""


class ToolkitDetector:
    """Checks whether docker has the NVIDIA runtime available."""

    def __init__(self, logger: Logger | None = None):
        self.logger = logger

    def _log(
        self,
        level: Level,
        event_type: str,
        message: str,
        payload: Mapping[str, Any] | None = None,
    ) -> None:
        if self.logger is not None:
            self.logger.log(level, event_type, message, payload)

    def detect_container_toolkit(self) -> ContainerToolkitReport:
        """Probe docker for the NVIDIA runtime and return a report."""
        self._log(Level.INFO, "gpu.toolkit.detect.start", "Starting Container Toolkit detection")
        report = ContainerToolkitReport()

        if not self._is_docker_available():
            report.error_message = "Docker is not available"
            self._log(Level.WARN, "gpu.toolkit.docker.unavailable", "Docker not found")
            return report

        try:
            supported, detail = self._detect_docker_runtime()
        except _CommandFailed as exc:
            report.error_message = f"docker info failed: {exc}"
            self._log(
                Level.WARN,
                "gpu.toolkit.inspect.failed",
                "Failed to inspect docker runtime",
                {"error": str(exc)},
            )
            return report

        if not supported:
            report.error_message = detail
            self._log(
                Level.INFO,
                "gpu.toolkit.runtime.absent",
                "NVIDIA runtime not detected",
                {"detail": detail},
            )
            return report

        report.docker_support = True
        report.toolkit_version = self._toolkit_version()
        self._log(
            Level.INFO,
            "gpu.toolkit.detected",
            "Container Toolkit detected successfully",
            {"version": report.toolkit_version},
        )
        return report

    def _is_docker_available(self) -> bool:
        try:
            _run(["docker", "info"])
        except _CommandFailed:
            return False
        return True

    def _detect_docker_runtime(self) -> tuple[bool, str]:
        try:
            output = _run(["docker", "info", "--format", "{{json .Runtimes}}"])
        except _CommandFailed:
            output = None

        if output is not None:
            try:
                runtimes = json.loads(output)
                if runtimes is not None and not isinstance(runtimes, dict):
                    raise ValueError("runtimes JSON is not an object")
            except ValueError as exc:
                self._log(
                    Level.WARN,
                    "gpu.toolkit.runtime.parse_failed",
                    "Failed to parse docker runtime json",
                    {"error": str(exc)},
                )
            else:
                if runtimes and "nvidia" in runtimes:
                    return True, ""

        info = _run(["docker", "info"])
        if "Runtimes: nvidia" in info or "nvidia-container-runtime" in info:
            return True, ""
        return False, "NVIDIA runtime not listed in docker info"

    def _toolkit_version(self) -> str:
        try:
            output = _run(["nvidia-container-toolkit", "--version"])
        except _CommandFailed:
            return ""
        return parse_toolkit_version(output)

    def quick_gpu_check(self) -> bool:
        """Return True if nvidia-smi runs successfully."""
        try:
            _run(["nvidia-smi"])
        except _CommandFailed:
            return False
        return True