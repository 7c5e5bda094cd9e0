"""
GroupLedger - Consolidation Engine

Group aggregate, elimination rules, intercompany matching, run state machine,
trial balance builder and financial statement generators.
"""
