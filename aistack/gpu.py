"""GPU detection through an NVML backend and JSON GPU reports."""

from __future__ import annotations

import json
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Mapping

from aistack.eventlog import Level, Logger

_BYTES_PER_MB = 1024 * 1024

NVML_UNAVAILABLE_MESSAGE = "NVML disabled: no NVML backend available"


class NVMLError(Exception):
    """Raised by an NVML backend or device when a call does not succeed."""

    def __init__(self, message: str, code: int | None = None):
        super().__init__(message)
        self.code = code


class NVMLDevice(ABC):
    """One GPU device as seen through NVML; every call raises NVMLError on failure."""

    @abstractmethod
    def name(self) -> str:
        """Return the product name of the device."""

    @abstractmethod
    def uuid(self) -> str:
        """Return the device UUID."""

    @abstractmethod
    def memory_info(self) -> tuple[int, int]:
        """Return total and used memory in bytes."""

    @abstractmethod
    def utilization_rates(self) -> tuple[int, int]:
        """Return GPU and memory utilisation in percent."""

    @abstractmethod
    def power_usage(self) -> int:
        """Return the power draw in milliwatts."""

    @abstractmethod
    def temperature(self, sensor: int = 0) -> int:
        """Return the temperature of ``sensor`` in degrees Celsius."""


class NVMLBackend(ABC):
    """Access to the NVML library; every call raises NVMLError on failure."""

    @abstractmethod
    def init(self) -> None:
        """Initialise the library."""

    @abstractmethod
    def shutdown(self) -> None:
        """Release the library."""

    @abstractmethod
    def device_count(self) -> int:
        """Return the number of GPU devices."""

    @abstractmethod
    def device_handle(self, index: int) -> NVMLDevice:
        """Return the device at ``index``."""

    @abstractmethod
    def driver_version(self) -> str:
        """Return the driver version string."""

    @abstractmethod
    def cuda_driver_version(self) -> int:
        """Return the CUDA driver version as an integer such as 12020."""


@dataclass
class GPUInfo:
    """Information about one GPU."""

    name: str = ""
    uuid: str = ""
    memory_mb: int = 0
    index: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "uuid": self.uuid,
            "memory_mb": self.memory_mb,
            "index": self.index,
        }


@dataclass
class GPUReport:
    """The result of a GPU detection run."""

    driver_version: str = ""
    cuda_version: int = 0
    nvml_ok: bool = False
    gpus: list[GPUInfo] = field(default_factory=list)
    error_message: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Return the report in its JSON shape; an empty error message is left out."""
        data: dict[str, Any] = {
            "driver_version": self.driver_version,
            "cuda_version": self.cuda_version,
            "nvml_ok": self.nvml_ok,
            "gpus": [gpu.to_dict() for gpu in self.gpus],
        }
        if self.error_message:
            data["error_message"] = self.error_message
        return data


def _log(
    logger: Logger | None,
    level: Level,
    event_type: str,
    message: str,
    payload: Mapping[str, Any] | None = None,
) -> None:
    if logger is not None:
        logger.log(level, event_type, message, payload)


def save_report(
    report: GPUReport, path: str | os.PathLike[str], logger: Logger | None = None
) -> None:
    """Write ``report`` as indented JSON to ``path`` with owner-only permissions."""
    data = json.dumps(report.to_dict(), indent=2)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(data)
    _log(logger, Level.INFO, "gpu.report.saved", "GPU report saved", {"filepath": os.fspath(path)})


class Detector:
    """Detects GPUs through an NVML backend; without one it reports NVML as unavailable."""

    def __init__(self, logger: Logger | None = None, nvml: NVMLBackend | None = None):
        self._logger = logger
        self._nvml = nvml

    def detect_gpus(self) -> GPUReport:
        """Probe the backend and return a report; failures are recorded, not raised."""
        if self._nvml is None:
            _log(
                self._logger,
                Level.INFO,
                "gpu.detect.disabled",
                "Skipping NVML detection (no NVML backend)",
            )
            return GPUReport(nvml_ok=False, error_message=NVML_UNAVAILABLE_MESSAGE)

        nvml = self._nvml
        _log(self._logger, Level.INFO, "gpu.detect.start", "Starting GPU detection")
        report = GPUReport()

        try:
            nvml.init()
        except NVMLError as exc:
            report.error_message = f"Failed to initialize NVML: {exc}"
            _log(
                self._logger,
                Level.WARN,
                "gpu.nvml.init.failed",
                "NVML initialization failed",
                {"error": report.error_message},
            )
            return report

        try:
            report.nvml_ok = True
            self._probe(nvml, report)
        finally:
            try:
                nvml.shutdown()
            except NVMLError as exc:
                _log(
                    self._logger,
                    Level.WARN,
                    "gpu.nvml.shutdown.failed",
                    "NVML shutdown reported an error",
                    {"error": str(exc)},
                )
        return report

    def _probe(self, nvml: NVMLBackend, report: GPUReport) -> None:
        try:
            report.driver_version = nvml.driver_version()
        except NVMLError as exc:
            _log(
                self._logger,
                Level.WARN,
                "gpu.driver.version.failed",
                "Failed to get driver version",
                {"error": str(exc)},
            )

        try:
            report.cuda_version = nvml.cuda_driver_version()
        except NVMLError as exc:
            _log(
                self._logger,
                Level.WARN,
                "gpu.cuda.version.failed",
                "Failed to get CUDA version",
                {"error": str(exc)},
            )

        try:
            count = nvml.device_count()
        except NVMLError as exc:
            report.error_message = f"Failed to get device count: {exc}"
            _log(
                self._logger,
                Level.ERROR,
                "gpu.device.count.failed",
                "Failed to get GPU count",
                {"error": report.error_message},
            )
            return

        _log(self._logger, Level.INFO, "gpu.device.count", "Found GPU devices", {"count": count})

        for index in range(count):
            try:
                device = nvml.device_handle(index)
            except NVMLError as exc:
                _log(
                    self._logger,
                    Level.WARN,
                    "gpu.device.handle.failed",
                    "Failed to get device handle",
                    {"index": index, "error": str(exc)},
                )
                continue

            info = GPUInfo(index=index)
            try:
                info.name = device.name()
            except NVMLError:
                pass
            try:
                info.uuid = device.uuid()
            except NVMLError:
                pass
            try:
                total, _used = device.memory_info()
                info.memory_mb = total // _BYTES_PER_MB
            except NVMLError:
                pass

            report.gpus.append(info)
            _log(
                self._logger,
                Level.INFO,
                "gpu.device.detected",
                "GPU device detected",
                {
                    "index": index,
                    "name": info.name,
                    "uuid": info.uuid,
                    "memory_mb": info.memory_mb,
                },
            )

    def save_report(self, report: GPUReport, path: str | os.PathLike[str]) -> None:
        """Write ``report`` as JSON to ``path``."""
        save_report(report, path, self._logger)