"""
Gateway Services

- device - Slaves, sources, polling and the slave registry
- bus - Object exposition and the HTTP request surface
"""
