"""QuillQueue: staged title -> outline -> blog generation over background job queues."""

__version__ = "0.1.0"
