"""Restaurant extraction pipeline.

Four stages behind one ``process(payload)`` capability, driven by a fixed
state machine:
  Stage 1: Fetcher:         page retrieval + shallow structural scan
  Stage 2: Field Extractor: keyword/pattern heuristics -> CandidateRecord
  Stage 3: Validator:       canonical schema check, completeness/accuracy
  Stage 4: Synthesizer:     external reasoning (conditional)
  Orchestrator:             WorkItem state machine + persistence (no LLM)
"""
