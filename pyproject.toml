[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "garycan"
version = "0.1.0"
description = "SocketCAN sender, per-ID receiver and bus health monitor for Linux CAN interfaces"
requires-python = ">=3.10"
dependencies = []
keywords = ["can", "socketcan", "canbus", "diagnostics", "linux", "monitor", "netlink"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Embedded Systems :: Controller Area Network (CAN)",
    "Topic :: System :: Monitoring",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
socket-can-monitor = "garycan.monitor:main"

[tool.hatch.build.targets.wheel]
packages = ["garycan"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
