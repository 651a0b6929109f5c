#!/usr/bin/env python

from setuptools import setup, find_packages

readme = open("README.md").read()

setup(
    name="dap-interop-orchestrator-job",
    version="0.1.0",
    author="dap-interop@example.com",
    packages=find_packages(include=["dap_interop_orchestrator"]),
    entry_points={
        "console_scripts": [
            "dap-interop-orchestrator = dap_interop_orchestrator.main:run"
        ]
    },
    install_requires=[
        "click",
        "cryptography",
        "google-cloud-storage",
        "pydantic>=2",
        "requests",
    ],
    extras_require={"test": ["pytest", "responses"]},
    python_requires=">=3.10",
    long_description=readme,
    include_package_data=True,
    license="MPL 2.0",
)
