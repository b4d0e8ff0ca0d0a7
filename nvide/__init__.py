"""Neovim IDE companion: lets a terminal coding agent use Neovim as its IDE."""
__version__ = "0.1.0"
