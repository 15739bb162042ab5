"""Sandbox module.

This module handles:
- Running privileged and unprivileged commands in the chroot
- Writing the build tree's startup script and compatibility wrappers
"""

from rstack_build.sandbox.runner import Sandbox, create_sandbox

__all__ = ["Sandbox", "create_sandbox"]
