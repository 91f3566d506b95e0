"""CLI command modules, loaded on demand by ``cli_modular``."""
