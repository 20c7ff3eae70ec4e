[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "chunkvault"
version = "0.1.0"
description = "Content-defined chunking, chunk encryption with erasure coding, and threaded chunk transfer for deduplicating backups"
requires-python = ">=3.10"
dependencies = [
    "cryptography",
    "lz4",
]
keywords = ["backup", "deduplication", "chunking", "buzhash", "erasure-coding", "encryption", "highwayhash", "reed-solomon"]
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
    "Topic :: System :: Archiving :: Backup",
    "Topic :: Security :: Cryptography",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["chunkvault"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
ignore_missing_imports = true
