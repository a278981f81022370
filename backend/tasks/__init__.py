# tasks/__init__.py
# ============================================================================
# BILLING ENGINE — BACKGROUND TASKS
# ============================================================================
# Reminder scheduler, late fees and the overdue sweeper. Import from the
# submodules directly; they depend on services/ and vice versa.
# ============================================================================
