[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "soarpkg"
version = "0.1.0"
description = "Package registry, installer and runner for portable Linux binaries"
requires-python = ">=3.10"
keywords = ["package-manager", "portable", "binary", "appimage", "linux"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Software Distribution",
]
dependencies = [
    "msgpack",
    "requests",
    "pillow>=9.1",
]

[project.optional-dependencies]
test = [
    "pytest",
    "responses",
]

[tool.hatch.build.targets.wheel]
packages = ["soarpkg"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
