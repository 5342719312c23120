"""Command line entry points for FlashRoute."""
