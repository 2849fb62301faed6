"""传输原语：outbound request stream 与共享 mailbox 目录。"""
