[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "lightningstream"
version = "0.1.0"
description = "Tools for LMDB databases that sync through snapshots: value headers, DBI flags, insert strategies, stats and configuration"
requires-python = ">=3.10"
keywords = ["lmdb", "sync", "snapshot", "database", "replication", "stats"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Database",
    "Topic :: System :: Systems Administration",
]
dependencies = [
    "lmdb",
    "pyyaml",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
lightningstream = "lightningstream.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["lightningstream"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
ignore_missing_imports = true
