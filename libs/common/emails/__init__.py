"""
Email package.

- client: EmailClient for sending templated emails via the Communications Service API
"""
