"""Render compose files and cluster manifests from the unified configuration."""

from generators.compose import ComposeGenerator, generate_compose
from generators.manifests import ManifestGenerator

__all__ = ['ComposeGenerator', 'ManifestGenerator', 'generate_compose']
