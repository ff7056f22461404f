"""xlplan: natural-language spreadsheet requests compiled into deterministic step plans."""

__version__ = "0.1.0"
