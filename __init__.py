"""
Depth-feature random forests

Trains and evaluates ensembles of binary decision trees that label individual
pixels of depth images. Each split compares the depth at two random offsets
around a pixel against a threshold; splits are chosen by information gain over
a randomized candidate set searched in parallel.
"""
