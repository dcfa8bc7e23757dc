[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "transactioner"
version = "0.1.0"
description = "A small transaction validator: orders incoming transactions by score, batches commutative ones and keeps account balances."
requires-python = ">=3.10"
dependencies = []
keywords = ["transactions", "validator", "accounts", "ledger", "batching"]
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
    "Topic :: Office/Business :: Financial :: Accounting",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
transactioner = "transactioner.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["transactioner"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]
