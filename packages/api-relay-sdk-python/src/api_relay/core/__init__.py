"""核心协议：envelope 编解码、调用 context、等待与解码。"""
