# aistack

A Python library for looking after a local AI service stack on a Linux
machine. It reads and validates the stack's configuration, checks whether
NVIDIA GPUs and the NVIDIA container runtime are available, manages a GPU
lock file so that only one service uses the GPU at a time, and writes
structured JSON log events.

## Installation

```
pip install .
```

The test suite needs the `test` extra:

```
pip install ".[test]"
pytest
```

## Modules

- `aistack.eventlog` – `Logger` writes one JSON object per line (fields
  `ts`, `level`, `type`, `message` and, when non-empty, `payload`) for every
  event at or above its minimum `Level` (`DEBUG`, `INFO`, `WARN`, `ERROR`).
  It writes to standard error unless given another stream.
  `open_file_logger(level, path)` returns a logger that appends to a file,
  creating its directory; the logger is a context manager that closes the file.
- `aistack.configdir` – `config_dir()` returns `/etc/aistack`, or the
  absolute form of `AISTACK_CONFIG_DIR` when that is set.
- `aistack.config` – `Config` and its sections, `default_config()`,
  `load()`, `load_from(path)`, `merge_config(dst, src)`,
  `format_validation_errors(errors)`, `system_config_path()` and
  `user_config_path()`. Loading and validation failures raise
  `ConfigError`, whose `errors` attribute holds the `ValidationError`s.
- `aistack.gpu` – `Detector` probes GPUs through an `NVMLBackend` and
  returns a `GPUReport` of `GPUInfo` entries; `save_report` writes a report
  as JSON with owner-only permissions.
- `aistack.toolkit` – `ToolkitDetector` runs `docker info` to see whether the
  NVIDIA runtime is registered, and `nvidia-container-toolkit --version` for
  the toolkit version; `quick_gpu_check()` tells whether `nvidia-smi` runs.
- `aistack.gpulock` – `LockManager` keeps `gpu_lock.json` in a state
  directory. `acquire(holder)` takes the lock for `Holder.OPENWEBUI` or
  `Holder.LOCALAI`, clearing a lock of another holder once it is older than
  the lease timeout (five minutes by default); `release`, `force_unlock`,
  `get_status` and `is_locked` complete it. Failures raise `GPULockError`.
- `aistack.formatting` – `format_bytes`, `format_duration`, `state_dir()`
  (`AISTACK_STATE_DIR` or `/var/lib/aistack`), `locate_versions_lock_file()`
  and `read_version_lock_entries(path)`.

## Configuration

Settings are merged from built-in defaults, then the system file
`config.yaml` in `config_dir()`, then the user file `~/.aistack/config.yaml`.
Non-empty strings in a later file override earlier ones; the boolean fields
are always taken from the later file. Example:

```yaml
container_runtime: docker    # docker or podman
profile: standard-gpu        # minimal, standard-gpu or dev
gpu_lock: true
logging:
  level: info                # debug, info, warn or error
  format: json               # json or text
models:
  keep_cache_on_uninstall: true
updates:
  mode: rolling              # rolling or pinned
```

## Example

```python
from aistack.config import ConfigError, load_from
from aistack.eventlog import Level, Logger
from aistack.formatting import format_bytes
from aistack.gpulock import Holder, LockManager

try:
    cfg = load_from("config.yaml")
except ConfigError as exc:
    print(exc)

logger = Logger(Level.INFO)
locks = LockManager("/tmp/aistack-state", logger)
locks.acquire(Holder.LOCALAI)
print(locks.get_status().holder)   # localai
locks.release(Holder.LOCALAI)

print(format_bytes(1536))          # 1.5 KiB
```

## What this package does not do

- It has no command-line program; everything is used from Python.
- It ships no binding to the NVIDIA NVML library. `Detector` without a
  backend reports NVML as unavailable; to probe real GPUs, supply your own
  subclass of `NVMLBackend` and `NVMLDevice`.
- It does not install, start, stop, update or remove services, manage
  models, build diagnostic packages or handle suspend.