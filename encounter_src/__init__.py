"""
Clinic Encounter Orchestration Module

Tracks each patient visit through the clinic and coordinates the staff who act
on it:

- Encounter lifecycle (check-in, rooming, nurse, doctor, completion, checkout)
- Exam room and short-stay bed reservation
- Department routing (lab, imaging, pharmacy, front desk)
- Directed notifications with live push and critical-result acknowledgment
- Invoice generation when the encounter finishes

Side effects are written to an outbox in the same transaction as the state
change and delivered after commit.
"""

__version__ = "1.0.0"
