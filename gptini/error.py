#!/usr/bin/env python3
# -*- coding: utf-8 -*-
class GptiniError(Exception):
    ''' Base class for all exceptions in the gptini package '''

class ConfigError(GptiniError):
    ''' Exception raised when there is an error in the client configuration '''

class ApiError(GptiniError):
    ''' Exception raised when a REST request fails '''

    def __init__(self, message, status=None):
        super().__init__(message)
        self.status = status

class AuthError(ApiError):
    ''' Exception raised when the server rejects the stored credentials '''

class TransportError(Exception):
    ''' Base class for all exceptions in the stomp package '''

class ConnectionFailed(TransportError):
    ''' Exception raised when the connection to the server fails '''

class ConnectionClosed(TransportError):
    ''' Exception raised when the connection to the server is closed '''

class PingTimeout(ConnectionClosed):
    ''' Exception raised when the server stops sending heart-beats '''

class StompError(TransportError):
    ''' Exception raised when the server sends a STOMP ERROR frame '''

class FrameError(StompError):
    ''' Exception raised when a STOMP frame can not be decoded '''
