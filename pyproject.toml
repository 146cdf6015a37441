[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "dqmp"
version = "0.1.0"
description = "Sharded key-value and file storage with an HTTP API, a client and the dqmpctl command"
requires-python = ">=3.10"
dependencies = [
    "pyyaml",
]
keywords = ["distributed", "storage", "sharding", "key-value", "rest", "http"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Environment :: Console",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Distributed Computing",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
dqmpctl = "dqmp.ctl:main"

[tool.hatch.build.targets.wheel]
packages = ["dqmp"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
