"""协议传输层。

该包下的模块负责：
- conduit: 请求体的有界字节管道。
- multipart: multipart 写入与流式解析。
- status: HTTP 状态分类与结构化异常解析。
- envelope: {"directive": ...} 信封解码。
- downchannel: 下行通道的后台读取与 DirectiveStream。
"""
