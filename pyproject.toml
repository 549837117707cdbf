[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "marathon-api"
version = "0.1.0"
description = "JSON HTTP API for managing apps and their push notification jobs"
requires-python = ">=3.10"
keywords = ["push", "notifications", "jobs", "wsgi", "api"]
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
    "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
    "Topic :: Internet :: WWW/HTTP :: WSGI :: Application",
]
dependencies = [
    "werkzeug",
    "pyyaml",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
marathon-api = "marathon_api.application:main"

[tool.hatch.build.targets.wheel]
packages = ["marathon_api"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
