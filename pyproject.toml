[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "rita"
version = "0.1.0"
description = "Threat-hunting building blocks for network traffic: network-aware IP identities and MongoDB repositories for hosts, hostnames, exploded DNS, unique connections, user agents, invalid certificates and blacklisted peers."
requires-python = ">=3.10"
keywords = ["network", "security", "threat-hunting", "dns", "mongodb", "user-agent"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Information Technology",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Security",
    "Topic :: System :: Networking :: Monitoring",
]
dependencies = [
    "pymongo",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["rita"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
