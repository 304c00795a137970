"""
Visitors module.

Scope:
- Visitor CRUD, Excel import/export
- Visitor follow-ups
- Conversion of a visitor into a member
"""
