"""Сервис идемпотентного зачисления on-chain депозитов"""

__version__ = "0.1.0"
