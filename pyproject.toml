[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "blacktorrent"
version = "0.1.0"
description = "uTP (BEP-29) packet encoding and reliability bookkeeping: headers, selective ACKs, RTT estimation and retransmission tracking"
requires-python = ">=3.10"
dependencies = []
keywords = ["utp", "bep-29", "bittorrent", "transport", "sack", "rtt"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Communications :: File Sharing",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["blacktorrent"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
