"""Answer-quality evaluation for HeartBridge.

Code-based graders score retrieval and prompt assembly against expected
content so regressions in ranking or gating show up as failing evals.
"""
