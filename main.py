#!/usr/bin/env python3
"""
OpenShift Virtualization / KubeVirt VM agent fleet tool.

- install-operator: install OpenShift Virtualization and enable VSOCK
- add-vms: create N VMs and install the agent in each, concurrently
- setup-vm: install the agent in a single running VM
- logs: show the agent's journal or service status in a VM

This script supports running directly from a source checkout. If the
project is not installed, it adds the local `src/` directory to sys.path
before importing the CLI. For regular use, prefer installing the project
and using the `virt-fleet` console script.
"""

import os
import sys

# Add src/ to path to import modules directly
REPO_ROOT = os.path.dirname(os.path.abspath(__file__))
SRC_PATH = os.path.join(REPO_ROOT, "src")
if SRC_PATH not in sys.path:
    sys.path.insert(0, SRC_PATH)

from cli import main  # noqa: E402

if __name__ == "__main__":
    sys.exit(main())
