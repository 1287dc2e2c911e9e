"""
Dialogue personas.

Each persona file defines:
- name: Persona identifier
- prompt: Dialogue template with {0} person, {1} bot name, {2} time,
  {3} year and {4} chat symbol placeholders
"""
