[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "kubedevices"
version = "0.19.0"
description = "Device discovery, NUMA topology hints and SGX pod mutation helpers for Kubernetes device plugins"
requires-python = ">=3.10"
dependencies = []
keywords = ["kubernetes", "device-plugin", "sysfs", "numa", "sgx", "dsa", "idxd", "admission-webhook"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Hardware",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["kubedevices"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
strict = true
