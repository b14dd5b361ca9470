# This module handles context assembly for the agent path

# +---------------------+      +--------------------------+
# | Conversation memory |      |    Similarity index      |
# |---------------------|      |--------------------------|
# | (user, session,     |      | per-user task embeddings |
# |  sequence) turns    |      | rebuilt from the record  |
# | durable, append-only|      | service, process-local   |
# +---------------------+      +--------------------------+
#            \                            /
#             \                          /
#              v                        v
# +------------------------------------------+
# |           Reasoning context              |   (assembled per request)
# |------------------------------------------|
# | System prompt + today's date             |
# | Top-k similar tasks                      |
# | Last N turns of the session              |
# | Current message                          |
# +------------------------------------------+
#                     |
#                     v
#        [chat model + task tools loop]
