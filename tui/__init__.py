"""
Terminal chat client for GPTini

Login, room list and live chat screens on top of `gptini.ChatSession`,
drawn with blessed.

Usage:
    gptini [--profile NAME]
"""
