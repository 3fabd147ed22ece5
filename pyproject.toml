[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "meshacl"
version = "0.1.0"
description = "Access-control policy evaluation for mesh VPN coordination servers: parse ACL policies and generate packet filter and SSH rules."
requires-python = ">=3.10"
dependencies = [
    "pyyaml",
]
keywords = ["acl", "policy", "firewall", "vpn", "mesh", "ssh", "hujson"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking :: Firewalls",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["meshacl"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 88
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
