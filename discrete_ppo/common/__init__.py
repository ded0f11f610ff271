"""
common package
==============

Building blocks shared by the PPO update engine and the training loop:
networks, buffers, workers, the learner, loggers, callbacks and utilities.
"""
