"""Flaxeo: local orchestration server for stable-diffusion.cpp."""

__version__ = "1.0.0"
