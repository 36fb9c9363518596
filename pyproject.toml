[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "l4match"
version = "0.1.0"
description = "Recognise PostgreSQL connections and OpenVPN client reset messages from their first bytes"
requires-python = ">=3.10"
dependencies = [
    "cryptography",
]
keywords = [
    "openvpn",
    "postgresql",
    "layer4",
    "protocol detection",
    "multiplexing",
    "tls-auth",
    "tls-crypt",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["l4match"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]
