[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "netdaemons"
version = "0.1.0"
description = "Small network service daemons: TFTP listener, syslog receiver, service supervisor and console messaging"
requires-python = ">=3.10"
keywords = ["tftp", "syslog", "daemon", "udp", "services"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
]
dependencies = []

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["netdaemons"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
