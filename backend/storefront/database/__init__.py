"""
Database package initialization.

The package follows a modular structure:
- base: declarative base, mixins and portable column types
- connection: async engine, session factory and FastAPI dependency
- models: ORM models for catalog, promotions, carts, orders and payments
"""

__all__ = []
