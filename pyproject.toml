[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "platsched"
version = "0.1.0"
description = "Kubernetes scheduler extender for GPU-aware placement, with a telemetry metric and policy cache"
requires-python = ">=3.10"
keywords = ["kubernetes", "scheduler", "extender", "gpu", "telemetry"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Distributed Computing",
]
dependencies = [
    "requests",
    "pyyaml",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
gas-scheduler-extender = "platsched.gpu.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["platsched"]

[tool.pytest.ini_options]
addopts = "-ra"
