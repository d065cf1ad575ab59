#!/usr/bin/env python3
"""Run the stack orchestrator from a checkout once the package is installed (``pip install -e .``)."""
import sys

from cfn_stack_orchestrator.cli import main


if __name__ == "__main__":
  sys.exit(main())
