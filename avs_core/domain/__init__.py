"""领域层模型与异常。

包含：
- models: Request / Response / Directive / ExceptionPayload。
- exceptions: AvsError 及其子类。
"""
