"""CrateWarden: supply-chain security triage for Rust crates."""

__version__ = "0.1.0"
