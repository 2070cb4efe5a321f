"""Setup script for live-usb-maker."""

from setuptools import find_packages, setup

# Read the version from __version__.py
version_dict = {}
with open("live_usb_maker/__version__.py") as f:
    exec(f.read(), version_dict)

VERSION = version_dict["__version__"]

setup(
    name="live-usb-maker",
    version=VERSION,
    description="Write live ISO images to USB sticks with encrypted persistence",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.9",
    install_requires=[
        "loguru>=0.7.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-cov>=4.0.0",
            "pytest-mock>=3.10.0",
            "ruff>=0.1.0",
            "black>=23.0.0",
            "isort>=5.12.0",
            "mypy>=1.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "live-usb-maker=live_usb_maker.main:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: System Administrators",
        "Topic :: System :: Systems Administration",
        "Topic :: Utilities",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Operating System :: POSIX :: Linux",
    ],
    keywords="live-usb iso persistence luks syslinux archiso",
)
