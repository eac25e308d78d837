"""
Server-side scoring collaborators
engines/

1. Scoring Rules Engine    — marks / negative marks hierarchy, per-question scoring
2. Traditional Computation — authoritative full-exam scoring used by the fallback path
"""
