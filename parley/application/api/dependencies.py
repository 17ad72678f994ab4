from fastapi import Request

from parley.bootstrap import Container


def get_container(request: Request) -> Container:
    """Engine container attached to the app at startup"""
    return request.app.state.container
