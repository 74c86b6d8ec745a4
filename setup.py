from setuptools import setup, find_packages

setup(
    name="stepgraph",
    version="0.1.0",
    package_dir={"": "src"},
    packages=find_packages("src", exclude=["tests", "tests.*"]),
    install_requires=[
        "pydantic>=2",
        "pytest",
        "pytest-asyncio",
        "mirascope>=1,<2",
    ],
    python_requires=">=3.10",
    # Add metadata for PyPI
    description="stateful graph workflows with reducers, checkpoints and human-in-the-loop interrupts",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
)
