[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "meterread"
version = "0.1.0"
description = "Read energy meters over D0 optical interfaces, files, commands, Flukso SPI output and camera images"
requires-python = ">=3.10"
keywords = ["smart meter", "d0", "iec 62056-21", "obis", "energy", "ocr", "needle dial"]
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
    "Topic :: Home Automation",
]
dependencies = [
    "pyserial",
    "numpy",
    "pillow",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["meterread"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
