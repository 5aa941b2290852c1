[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "cityrelay"
version = "0.1.0"
description = "Group-chat event relay core: event validation, abuse controls, SQLite storage and group state projection"
requires-python = ">=3.10"
dependencies = []
keywords = ["nostr", "relay", "groups", "chat", "events", "schnorr", "sqlite"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Communications :: Chat",
    "Topic :: Database",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["cityrelay"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
