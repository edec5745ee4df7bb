"""Minimal demonstration: ping, send a text event and listen on the downchannel."""

import os
import uuid

from avs_core import Request, create_client

if __name__ == "__main__":
    token = os.environ["AVS_ACCESS_TOKEN"]
    client = create_client()
    client.ping(token)

    metadata = {
        "event": {
            "header": {
                "namespace": "Text",
                "name": "TextMessage",
                "messageId": uuid.uuid4().hex,
            },
            "payload": {"text": "今天天气怎么样"},
        }
    }
    resp = client.send(Request(token=token, metadata=metadata))
    print("Request:", resp.request_id)
    for directive in resp.directives:
        print("Directive:", directive)
    print("Content:", {k: len(v) for k, v in resp.content.items()})

    with client.open_downchannel(token) as stream:
        for directive in stream:
            print("Pushed:", directive)
        if stream.error is not None:
            print("Downchannel ended:", stream.error.code, stream.error.message)
