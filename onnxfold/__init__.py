from onnxfold.onnxfold import optimize, main

__version__ = '1.0.0'
