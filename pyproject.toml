[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "pixbreaker"
version = "1.0.0"
description = "Chaos and invariant harness for Pix-style payment APIs: concurrency, webhook replay, reconciliation and crash-recovery attacks with a JSON verdict report."
requires-python = ">=3.10"
dependencies = []
keywords = ["payments", "pix", "chaos-testing", "idempotency", "webhooks", "resilience"]
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
    "Topic :: Software Development :: Testing",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
pixbreaker = "pixbreaker.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["pixbreaker"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
