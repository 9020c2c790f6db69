import setuptools

try:
    with open("README.md", "r", encoding="utf-8") as fh:
        long_description = fh.read()
except FileNotFoundError:
    long_description = "Container image build orchestration for Kubernetes clusters"

setuptools.setup(
    name="cluster-build",
    version="0.1.0",
    description="Container image build orchestration for Kubernetes clusters",
    long_description=long_description,
    long_description_content_type="text/markdown",
    package_dir={"": "src"},
    packages=setuptools.find_packages(where="src", include=["cluster_build", "cluster_build.*"]),
    install_requires=[
        "pydantic>=2.0",
        "rich",
        "python-dotenv",
        "kubernetes",
        "websocket-client",
        "urllib3",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.9",
)
