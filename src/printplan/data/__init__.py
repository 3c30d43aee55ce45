"""Persistence (sqlite) and workbook import."""
