"""
Members module.

Scope:
- Member directory (search, filters, pagination) + CRUD with audited field changes
- Photo upload through Storage
- Excel template / import / export
- Member follow-up records (shown on the detail page and the follow-ups page)
"""
