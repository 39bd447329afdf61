from setuptools import setup, find_packages

setup(
    name='depthforest',
    version='1.0',
    packages=find_packages(exclude=['tests', 'experiments']),
    py_modules=[
        'depth_feature',
        'depth_image',
        'forest_errors',
        'random_forest',
        'split_search',
        'train_data',
        'tree_builder',
        'tree_io',
    ],
    python_requires='>=3.10',
    install_requires=[
        'numpy>=1.22',
        'matplotlib>=3.5',
    ],
    extras_require={
        'test': ['pytest'],
    },
    description='Random decision forests over depth-difference features for per-pixel labeling',
)
