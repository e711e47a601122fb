[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "tinydfs"
version = "0.1.0"
description = "A small distributed file store over gRPC: a master node, data nodes that replicate files, and an interactive client."
requires-python = ">=3.10"
keywords = ["distributed", "file-system", "grpc", "replication", "storage"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: Education",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Distributed Computing",
    "Topic :: System :: Filesystems",
]
dependencies = [
    "grpcio",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
tinydfs-master = "tinydfs.master:main"
tinydfs-datanode = "tinydfs.datanode:main"
tinydfs-client = "tinydfs.client:main"

[tool.hatch.build.targets.wheel]
packages = ["tinydfs"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
