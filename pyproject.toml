[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "vslamkit"
version = "0.1.0"
description = "Geometry building blocks for visual SLAM: EPnP with RANSAC, Sim3 alignment, contour region properties and trajectory export."
requires-python = ">=3.10"
dependencies = [
    "numpy",
]
keywords = ["slam", "pnp", "epnp", "ransac", "sim3", "regionprops", "trajectory", "computer-vision"]
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
    "Topic :: Scientific/Engineering :: Image Processing",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["vslamkit"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
