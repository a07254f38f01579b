[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "iavl"
version = "0.1.0"
description = "Versioned AVL+ tree nodes with Merkle hashing, node storage over a key-value store and read-only tree views"
requires-python = ">=3.10"
dependencies = []
keywords = ["avl", "merkle", "tree", "versioned", "key-value", "database"]
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
    "Topic :: Database",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["iavl"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
