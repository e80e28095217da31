#!/usr/bin/env python3
"""
Relay Agent - resilient streaming sessions against LLM providers.

Thin wrapper so the CLI can be run from a checkout without installing.
"""
import sys

from relay_agent.cli import main


if __name__ == "__main__":
    sys.exit(main())
