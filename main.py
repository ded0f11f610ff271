import gymnasium as gym

from discrete_ppo import Learner, LearnerConfig, NaNGuardCallback, PPOConfig


# -----------------------------
# Env factory
# -----------------------------
def make_env(worker_index: int, *, render_mode=None):
    """
    Create a fresh CartPole env for one collection worker.

    Each worker gets its own seed so rollouts are decorrelated.
    """
    env = gym.make("CartPole-v1", render_mode=render_mode)
    env.reset(seed=1000 + worker_index)
    env.action_space.seed(1000 + worker_index)
    return env


# -----------------------------
# Build learner
# -----------------------------
config = LearnerConfig(
    num_workers=4,
    timesteps_per_iteration=8_000,
    timesteps_per_save=100_000,
    timestep_limit=500_000,
    exp_buffer_size=16_000,
    checkpoints_save_folder="checkpoints/cartpole",
    send_metrics=True,
    exp_name="cartpole",
    device="cpu",  # or "cuda"
    ppo=PPOConfig(
        policy_layer_sizes=(64, 64),
        critic_layer_sizes=(64, 64),
        batch_size=8_000,
        mini_batch_size=2_000,
        epochs=4,
        ent_coef=0.01,
    ),
)

learner = Learner(make_env, config, callbacks=[NaNGuardCallback()])

with learner:
    learner.learn()
