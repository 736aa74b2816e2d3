"""Command-line interface for ForgeGuard."""
