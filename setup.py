import re

import setuptools

with open("pyminerfleet/__init__.py", "r") as fh:
    __version__ = '.'.join(re.search(r"version_tuple = \((\d+), (\d+), (\d+)\)", fh.read()).groups())

with open("README.md", "r") as fh:
    long_description = fh.read()

setuptools.setup(
    name="pyminerfleet",
    version=__version__,
    description="Python module to orchestrate fleets of Braiins OS mining devices: sessions, status cache and jobs",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages(include=["pyminerfleet", "pyminerfleet.*"]),
    python_requires=">=3.9",
    install_requires=[
        'requests',
        'python-dotenv',
        'pydantic>=2.0',
        'pydantic-settings>=2.0',
        'fastapi',
        'uvicorn',
        'redis>=5.0.1',
    ],
    extras_require={
        'test': [
            'pytest',
            'pytest-asyncio',
            'httpx',
        ],
    },
    entry_points={
        'console_scripts': [
            'pyminerfleet=pyminerfleet.__main__:main',
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
)
