# core/__init__.py
# Digest pipeline lives in core/digest (namespace package, imported by path).
