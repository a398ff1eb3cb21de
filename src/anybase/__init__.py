"""
Anybase - one document-store contract over MongoDB and PostgreSQL.

Application code talks to ``anybase.core.adapters.Database`` and its
collections; the backend is picked from configuration at startup.
"""

__version__ = "0.1.0"
