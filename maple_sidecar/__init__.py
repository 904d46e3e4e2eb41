"""
Maple Sidecar - a local supervisor for the maple-proxy binary.

Resolves and downloads a verified maple-proxy release for the running
platform, launches it as a child process, waits for it to report healthy,
and restarts it after unexpected crashes.
"""

__version__ = "0.1.0"
