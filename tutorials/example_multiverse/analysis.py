# Example multiverse analysis: does the gender of a hurricane's name predict its death toll?
# Every branch() call below is a decision point; the multiverse contains all
# combinations of options that satisfy the %when% conditions.
import numpy as np
import pandas as pd
import forkingpaths

#####################################
# 1. SIMULATE DATA
rng = np.random.default_rng(0)
n = 90
data = pd.DataFrame({
    "femininity": rng.uniform(1, 11, n),
    "damage": rng.lognormal(mean=20, sigma=1.5, size=n),
    "pressure": rng.normal(960, 20, n),
})
data["deaths"] = rng.poisson(np.exp(0.5 + 0.05 * data["femininity"] + 0.3 * np.log(data["damage"]) / 10))

mv = forkingpaths.create_multiverse(name="hurricane", inputs={"data": data}, config={"parallel": 2})

#####################################
# 2. DECISION: OUTLIER EXCLUSION
mv.add_code('''
df = branch(outliers,
    "none" ~ data,
    "top_deaths" ~ data[data.deaths < data.deaths.max()],
    "top_two" ~ data[data.deaths < data.deaths.nlargest(2).min()],
)
''')

#####################################
# 3. DECISIONS: DAMAGE TRANSFORM AND OUTCOME (the log transform needs positive values, so it is only
#    used together with a count outcome)
mv.add_code('''
import numpy as np
df = df.assign(
    damage_t=branch(damage_transform, "raw" ~ df.damage, "log" ~ np.log(df.damage)),
    outcome=branch(outcome, "count" ~ df.deaths, "log_count" %when% (damage_transform == "log") ~ np.log1p(df.deaths)),
)
''')

#####################################
# 4. DECISION: MODEL (ordinary least squares slope vs. rank correlation)
mv.add_code('''
import pandas as pd
effect = branch(model,
    "ols" ~ float(np.polyfit(df.femininity, df.outcome, 1)[0]),
    "spearman" ~ float(df.femininity.rank().corr(df.outcome.rank())),
)
summary = pd.DataFrame({"term": ["femininity"], "estimate": [effect], "n": [len(df)]})
''')

if __name__ == "__main__":
    mv.summary()
    mv.execute_all()
    print(mv.extract_variable("summary"))
    mv.export_scripts("scripts")
