[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "openvbus"
version = "0.1.0"
description = "Virtual Ethernet and CAN buses with live UDP/TCP capture, recording, replay and forwarding"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "virtual bus",
    "can",
    "ethernet",
    "capture",
    "replay",
    "udp",
    "tcp proxy",
    "traffic generator",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking :: Monitoring",
    "Topic :: System :: Networking",
    "Topic :: Software Development :: Testing :: Traffic Generation",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
vbusd = "openvbus.daemon:main"
vbusctl = "openvbus.ctl:main"
vbus-bench = "openvbus.bench:main"

[tool.hatch.build.targets.wheel]
packages = ["openvbus"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
