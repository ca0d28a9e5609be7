[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "lidarodom"
version = "0.1.0"
description = "Point cloud registration (ICP, NDT), lidar feature extraction, lidar/IMU synchronisation and an iterated error-state Kalman filter"
requires-python = ">=3.10"
keywords = [
    "lidar",
    "icp",
    "ndt",
    "registration",
    "point cloud",
    "imu",
    "kalman filter",
    "slam",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Science/Research",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Scientific/Engineering",
]
dependencies = [
    "numpy",
    "scipy",
    "pyyaml",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["lidarodom"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
ignore_missing_imports = true
