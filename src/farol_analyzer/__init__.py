"""
Farol Contract Analyzer

Ingests public procurement contracts published on PNCP (Portal Nacional de
Contratações Públicas), classifies them into spending categories and scores
each one against its peers to flag contracts that deserve a closer look.
"""

__version__ = "0.1.0"
