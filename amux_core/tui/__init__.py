"""Textual dashboard for amux."""
