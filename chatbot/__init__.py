"""
PymeBot chatbot runtime: flow graphs, the flow engine and business node executors.
"""
