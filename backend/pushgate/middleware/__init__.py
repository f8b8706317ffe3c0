"""Middleware package for FastAPI application"""
from pushgate.middleware.logging_middleware import RequestLoggingMiddleware

__all__ = ['RequestLoggingMiddleware']
