[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "sopsfile"
version = "0.1.0"
description = "Building blocks for encrypted secrets files: AES-GCM value encryption, age and Azure Key Vault master keys, format detection, key-group diffs, auditing hooks, editor launching and running commands with decrypted data."
requires-python = ">=3.10"
keywords = [
    "secrets",
    "encryption",
    "aes-gcm",
    "age",
    "azure-key-vault",
    "configuration",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Security :: Cryptography",
    "Topic :: System :: Systems Administration",
]
dependencies = [
    "cryptography",
    "requests",
    "pyyaml",
]

[project.optional-dependencies]
test = [
    "pytest",
    "hypothesis",
]

[tool.hatch.build.targets.wheel]
packages = ["sopsfile"]

[tool.hatch.build.targets.sdist]
include = ["sopsfile", "tests"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
ignore_missing_imports = true
