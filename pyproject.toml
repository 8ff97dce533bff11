[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "icemux"
version = "0.1.0"
description = "UDP and TCP socket multiplexing for ICE sessions, with a minimal STUN message codec"
requires-python = ">=3.10"
dependencies = [
    "psutil",
]
keywords = ["ice", "stun", "webrtc", "udp", "tcp", "multiplexing", "nat"]
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
    "Topic :: System :: Networking",
    "Topic :: Internet",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["icemux"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
