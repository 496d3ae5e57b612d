from setuptools import setup, find_packages

setup(
    name="patchgate",
    version="0.1.0",
    description="Watermark-gated retry runner for WSUS/ConfigMgr patch-management jobs",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    install_requires=[
        "pydantic>=2.5.0",
        "pydantic-settings>=2.7.0",
        "PyYAML>=6.0",
    ],
    extras_require={
        "winrm": [
            "pywinrm>=0.4.3",
        ],
        "dev": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
            "pytest-cov>=4.1.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "patchgate=patchgate.cli:main",
        ],
    },
    python_requires=">=3.11",
)
