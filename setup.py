"""Setup configuration for the Sheska Discord Bot."""

from setuptools import setup, find_packages

setup(
    name="sheska",
    version="0.1.0",
    description="A community Discord bot with a persistent post scheduler",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.11",
    install_requires=[
        "py-cord>=2.4",
        "aiosqlite>=0.19",
        "httpx>=0.27",
        "PyYAML>=6.0",
        "python-dotenv>=1.0",
        "prompt_toolkit>=3.0",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
        ],
    },
    entry_points={
        "console_scripts": [
            "sheska=sheska.main:main",
        ],
    },
)
