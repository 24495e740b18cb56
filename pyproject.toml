[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "callipsos"
version = "0.1.0"
description = "Policy engine and HTTP service that approves or blocks DeFi transactions against user-defined risk rules"
requires-python = ">=3.10"
keywords = ["defi", "policy", "risk", "transactions", "guardrails", "rules-engine"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: Financial and Insurance Industry",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Framework :: Flask",
    "Topic :: Office/Business :: Financial",
]
dependencies = [
    "flask",
    "python-dotenv",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
callipsos = "callipsos.app:main"

[tool.hatch.build.targets.wheel]
packages = ["callipsos"]

[tool.hatch.build.targets.sdist]
include = ["callipsos", "tests", "README.md", "pyproject.toml"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
