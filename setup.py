from setuptools import setup, find_packages

setup(
    name="velocitypulse-agent",
    version="1.0.0",
    description="Network discovery and health monitoring agent for VelocityPulse",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    install_requires=[
        "aiohttp>=3.9.0",
        "cryptography>=42.0.0",
        "pydantic>=2.5.0",
        "pydantic-settings>=2.1.0",
        "pyyaml>=6.0",
        "psutil>=5.9.0",
        "zeroconf>=0.131.0",
        "pysnmp>=7.1.0",
        "dnspython>=2.4.0",
        "netaddr>=0.10.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
            "pytest-cov>=4.1.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "velocitypulse-agent=velocitypulse_agent.agent:main",
        ],
    },
    python_requires=">=3.11",
)
