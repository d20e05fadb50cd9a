"""
BananaFlow - Node-based image generation workflows.

Resolves node inputs from a workflow graph and runs them against a
rate-limited generation service.
"""

__version__ = "0.1.0"
