"""
Disposal / outcome recording.

Disposing a culture or grow voids its record (via the amendment engine) and
keeps a structured outcome alongside, so failure patterns can be analysed
later instead of being lost with a plain delete.
"""
