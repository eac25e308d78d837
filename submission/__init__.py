"""
Exam Submission Pipeline
submission/

Steps:
1. Stabilizer   — deep, reference-free copy of the inbound payload
2. Transformer  — client-evaluation / progressive shape → CanonicalSubmission, zero-score recovery
3. Validator    — structural, integrity, security, temporal, statistical layers (concurrent)
4. Storage      — attempt limit, idempotent ExamResult write, exam linkage
5. Fallback     — route rejected/errored submissions to authoritative server-side scoring
6. Tracer       — request id, stage fingerprints, corruption detection, lifecycle states
7. Monitor      — latency classes, rolling window, dashboards from stored provenance
8. Router       — fast path vs legacy path, emergency fallback
"""
