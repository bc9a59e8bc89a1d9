[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "distlab"
version = "0.1.0"
description = "A toolkit for distributed-systems lab work: a simulated RPC network, a checked value codec, a versioned key/value model and a MapReduce framework"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "mapreduce",
    "rpc",
    "distributed-systems",
    "simulation",
    "linearizability",
    "key-value",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: Education",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Distributed Computing",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
mrsequential = "distlab.sequential:main"
mrcoordinator = "distlab.coordinator:main"
mrworker = "distlab.worker:main"

[tool.hatch.build.targets.wheel]
packages = ["distlab"]

[tool.hatch.build.targets.sdist]
include = ["distlab", "tests", "pyproject.toml", "README.md"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
