from setuptools import setup, find_packages

setup(
    name="midi2osc-bridge",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    package_dir={"": "."},
    install_requires=[
        "websockets>=13",
        "python-rtmidi",
        "python-osc",
        "requests",
        "psutil",
        "pytest",
        "pytest-asyncio",
        "pytest-timeout",
    ],
    python_requires=">=3.8",
    package_data={"": ["*.json"]},
    include_package_data=True
)
