[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "modelmesh-adapter"
version = "0.1.0"
description = "Runtime adapters that lay out model files and manage model loading for MLServer and OpenVINO Model Server"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "model serving",
    "inference",
    "mlserver",
    "openvino",
    "model mesh",
    "adapter",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Scientific/Engineering :: Artificial Intelligence",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["modelmesh_adapter"]

[tool.hatch.build.targets.sdist]
include = ["modelmesh_adapter", "tests"]

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
warn_redundant_casts = true
