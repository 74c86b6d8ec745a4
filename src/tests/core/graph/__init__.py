"""Test suite for the Stepgraph graph system.

1. Graph building and validation (test_base.py)
2. Nodes (nodes/)
3. State schema and reducers (test_state.py)
4. Scheduler (test_engine.py)
5. Interrupt/resume (test_interrupt.py)
6. Checkpoint stores (test_checkpoint.py)
7. Configuration (test_config.py)
8. Visualization (test_viz.py)
"""
