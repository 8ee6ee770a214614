"""Shared test fixtures."""

from pathlib import Path

# Six-category config with a Chase (negative) and Amex (positive) issuer
FIXTURE_CONFIG_DIR = Path(__file__).parent / "fixtures" / "config"

# Seed config shipped with the project
REPO_CONFIG_DIR = Path(__file__).parent.parent / "config"
