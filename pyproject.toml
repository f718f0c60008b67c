[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "mqbridge"
version = "0.1.0"
description = "Move messages between in-memory channels, files, HTTP, MQTT and MongoDB through one asyncio publisher/consumer interface"
requires-python = ">=3.10"
keywords = ["messaging", "bridge", "mqtt", "mongodb", "http", "queue", "asyncio"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Framework :: AsyncIO",
    "Intended Audience :: Developers",
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
    "aiohttp>=3.9",
    "paho-mqtt>=2.0",
    "pymongo>=4.6",
]

[project.optional-dependencies]
test = [
    "pytest>=7.4",
    "pytest-asyncio>=0.23",
]

[tool.hatch.build.targets.wheel]
packages = ["mqbridge"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
