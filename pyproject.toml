[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "graphts"
version = "0.1.0"
description = "Transaction core for a versioned graph key-value store: snapshots, conflict detection, locking, undo logs and a write-ahead log"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "transactions",
    "mvcc",
    "wal",
    "write-ahead-log",
    "snapshot-isolation",
    "two-phase-commit",
    "database",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Framework :: AsyncIO",
    "Topic :: Database :: Database Engines/Servers",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["graphts"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
