[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "posekit"
version = "0.1.0"
description = "Binary feature matching, EPnP camera pose estimation and Sim3 alignment with RANSAC"
requires-python = ">=3.10"
dependencies = [
    "numpy",
]
keywords = [
    "computer-vision",
    "pnp",
    "epnp",
    "ransac",
    "sim3",
    "feature-matching",
    "slam",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Science/Research",
    "Intended Audience :: Developers",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Operating System :: OS Independent",
    "Topic :: Scientific/Engineering :: Image Recognition",
]

[project.optional-dependencies]
test = [
    "pytest",
    "numpy",
]

[tool.hatch.build.targets.wheel]
packages = ["posekit"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
ignore_missing_imports = true
