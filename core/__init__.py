# SPDX-License-Identifier: MIT
"""Core infrastructure shared across FlashRoute packages."""
