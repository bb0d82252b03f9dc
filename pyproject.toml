[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "picokeys"
version = "0.1.0"
description = "Smart-card core for security keys: APDU handling, BER-TLV parsing, secure messaging, a flash-backed file system and LED blink patterns"
requires-python = ">=3.10"
dependencies = [
    "cryptography",
]
keywords = [
    "smartcard",
    "apdu",
    "iso7816",
    "tlv",
    "secure-messaging",
    "security-key",
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
    "Topic :: Security",
    "Topic :: Security :: Cryptography",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["picokeys"]

[tool.pytest.ini_options]
addopts = "-ra"
