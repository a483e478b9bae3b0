# This should be only one line. If it must be multi-line, indent the second
# line onwards to keep the PKG-INFO file format intact.
"""Deliver secrets to Salt minions through transient, minion-scoped pillar \
data.
"""

from setuptools import find_packages, setup

version = open("src/veracity/version.txt").read().strip()

setup(
    name="veracity",
    version=version,
    install_requires=[
        "ConfigUpdater",
        "cryptography",
        "requests",
        "importlib_metadata",
        "py",
        "pyrage",
        "pyyaml", ],
    extras_require={
        "test": [
            "mock",
            "pytest",
            "pytest-coverage",
            "pytest-instafail",
            "pytest-timeout", ]},
    entry_points="""
        [console_scripts]
            veracity = veracity.main:main
        [veracity.purposes]
            netbird = veracity.purposes:NetbirdEnrollment
            proxmox = veracity.purposes:ProxmoxCommand
    """,
    license="BSD (2-clause)",
    keywords="deployment salt secrets netbird",
    classifiers="""\
License :: OSI Approved :: BSD License
Programming Language :: Python
Programming Language :: Python :: 3
Programming Language :: Python :: 3 :: Only
"""[:-1].split("\n"),
    description=__doc__.strip(),
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    packages=find_packages("src"),
    package_dir={"": "src"},
    package_data={"veracity": ["version.txt"]},
    include_package_data=True,
    zip_safe=False,
    test_suite="veracity.tests",
    python_requires=">=3.8")
