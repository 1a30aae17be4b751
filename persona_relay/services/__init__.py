from .agent_gateway import AgentGateway, DeferredReply, ImmediateReply, MalformedReply, interpret_agent_response

__all__ = ["AgentGateway", "DeferredReply", "ImmediateReply", "MalformedReply", "interpret_agent_response"]
