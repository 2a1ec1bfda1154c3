# Single-flight local inference engine
#
# This package loads a model artifact into an in-process native engine and
# runs one generation at a time against it.
#
# Key components:
#   - adapters/         Native engine adapters (llama.cpp)
#   - registry.py       Maps model family names to adapters
#   - model_handle.py   Ownership of the loaded model/context
#   - generation.py     Decode loop and stop conditions
#   - sampling.py       Next-token sampling over logits
#   - streaming.py      Token streams and sink dispatch
#   - session.py        Exclusivity, entry points, cancellation
