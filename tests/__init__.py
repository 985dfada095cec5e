"""
Tests for the persistent_objects package.

This directory contains unit tests for:
- Type codec and schema reflection (codec.py, schema.py)
- Row mapping (mapper.py)
- Object lifecycle, references and relations (entity.py, session.py, relations.py)
- Store factory and database setup
"""
