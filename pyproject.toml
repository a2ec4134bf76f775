[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "polysender"
version = "0.3.0"
description = "Storage, scheduling and gateway building blocks for bulk message broadcasts over SMTP e-mail accounts and Android SMS devices."
requires-python = ">=3.10"
keywords = ["broadcast", "email", "smtp", "sms", "bulk-messaging", "scheduling", "cbor"]
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
    "Topic :: Communications :: Email",
]
dependencies = [
    "cbor2",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["polysender"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
