[build-system]
requires = ["setuptools>=61.0"]
build-backend = "setuptools.build_meta"

[project]
name = "topsqlmon"
version = "0.1.0"
description = "Top SQL storage and query layer for database cluster monitoring"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "monitoring",
    "top-sql",
    "database",
    "metrics",
    "time-series",
    "resource-metering",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Database",
    "Topic :: System :: Monitoring",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.setuptools.packages.find]
include = ["topsqlmon*"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]
