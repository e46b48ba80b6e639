[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "betstream"
version = "0.1.0"
description = "Event-driven live sports betting backend: bet placement, odds recalculation, fraud detection and settlement over a message bus, MongoDB and Redis."
requires-python = ">=3.10"
keywords = [
    "betting",
    "sportsbook",
    "odds",
    "event-driven",
    "fraud-detection",
    "mongodb",
    "redis",
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
    "Framework :: Flask",
    "Topic :: Office/Business :: Financial",
    "Topic :: Internet :: WWW/HTTP :: WSGI :: Application",
    "Typing :: Typed",
]
dependencies = [
    "flask>=3.0",
    "pymongo>=4.6",
    "redis>=5.0",
]

[project.optional-dependencies]
test = [
    "pytest>=7.4",
]

[project.scripts]
betstream-seed = "betstream.seeder:main"

[tool.hatch.build.targets.wheel]
packages = ["betstream"]

[tool.hatch.build.targets.sdist]
include = [
    "betstream",
    "tests",
    "pyproject.toml",
]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP", "SIM"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
no_implicit_optional = true
ignore_missing_imports = true
