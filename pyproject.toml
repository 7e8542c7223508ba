[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "psfguard"
version = "0.1.1"
description = "Star PSF fitting, wavelet structure removal and helpers for astronomical image quality assessment"
requires-python = ">=3.10"
dependencies = [
    "numpy",
]
keywords = ["astronomy", "telescope", "imaging", "psf", "fwhm", "wavelet"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Science/Research",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Operating System :: OS Independent",
    "Topic :: Scientific/Engineering :: Astronomy",
    "Topic :: Scientific/Engineering :: Image Processing",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["psfguard"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
