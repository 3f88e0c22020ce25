"""
CRM collaborators: practitioner directory, search, action generation and
the domain knowledge base.
"""
