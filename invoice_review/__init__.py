"""
Invoice Review - Main Source Package

This package contains the components of the invoice extraction and review pipeline:
- agents: extraction engine, validation engine, approval router, checkpoint controller, resume tokens
- config: logging, exception handling and pipeline configuration
- graph: LangGraph workflow and state management
- models: data models and pipeline step identifiers
- stores: checkpoint and resume-token persistence
- tools: PDF/OCR extraction strategies, field parsing, fuzzy matching, notification
- utils: prompt loading and retry helpers
"""

__version__ = "1.0.0"
