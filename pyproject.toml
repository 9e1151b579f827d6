[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "aistack"
version = "0.1.0.dev0"
description = "Library for managing a local AI service stack: configuration, GPU detection, container toolkit checks and a GPU lock"
requires-python = ">=3.10"
keywords = ["ai", "gpu", "nvidia", "containers", "administration"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Systems Administration",
]
dependencies = [
    "pyyaml>=6.0",
]

[project.optional-dependencies]
test = [
    "pytest>=7.0",
]

[tool.hatch.build.targets.wheel]
packages = ["aistack"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
